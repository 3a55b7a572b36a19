"""Provider registry: one adapter per job kind."""

import logging
from typing import Dict, List, Optional

from app.config import Settings
from app.providers.base import ProviderAdapter, redact
from app.providers.fal_image import FalImageAdapter
from app.providers.minimax_video import MiniMaxVideoAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds the adapter that serves each job kind."""

    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        if not adapter.kind:
            raise ValueError(f"{type(adapter).__name__} does not declare a job kind")
        self._adapters[adapter.kind] = adapter
        logger.info("Registered %s provider for '%s' jobs", adapter.provider_name, adapter.kind)

    def get(self, kind: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(kind)

    def kinds(self) -> List[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_registry(settings: Settings) -> ProviderRegistry:
    """Create adapters for every provider configured in settings."""
    common = dict(
        timeout=settings.http_timeout_seconds,
        submit_max_retries=settings.submit_max_retries,
        submit_retry_delay=settings.submit_retry_delay_ms / 1000.0,
    )
    registry = ProviderRegistry()
    registry.register(
        FalImageAdapter(settings.fal_key, queue_url=settings.fal_queue_url, model=settings.fal_model, **common)
    )
    registry.register(
        MiniMaxVideoAdapter(
            settings.minimax_api_token,
            group_id=settings.minimax_group_id,
            base_url=settings.minimax_base_url,
            model=settings.minimax_model,
            **common,
        )
    )
    if not settings.fal_key:
        logger.warning("FAL_KEY is not set; image jobs will fail to submit")
    if not settings.minimax_api_token:
        logger.warning("MINIMAX_API_TOKEN is not set; video jobs will fail to submit")
    else:
        logger.info("MiniMax token %s", redact(settings.minimax_api_token))
    return registry

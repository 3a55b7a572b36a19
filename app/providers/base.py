"""Base provider adapter interface and shared HTTP plumbing."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from app.jobs.errors import InvalidRequest, SubmissionError, scrub
from app.jobs.models import Artifact, GenerationRequest, RawStatus

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 2000


def redact(token: Optional[str]) -> str:
    """Short form of a credential that is safe to log."""
    if not token:
        return "<unset>"
    return f"{token[:4]}…"


class ProviderAdapter(ABC):
    """Translates generic job operations into one provider's wire format.

    To add a provider:
    1. Subclass ProviderAdapter in app/providers/
    2. Set `kind` and `provider_name`
    3. Implement submit(), fetch_status() and fetch_result()
    4. Register an instance in build_registry()
    """

    kind: str = ""
    provider_name: str = ""

    def __init__(
        self,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        submit_max_retries: int = 2,
        submit_retry_delay: float = 1.0,
    ):
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.submit_max_retries = submit_max_retries
        self.submit_retry_delay = submit_retry_delay

    def __repr__(self) -> str:
        return f"{type(self).__name__}(token={redact(self._token)})"

    @abstractmethod
    def auth_headers(self) -> Dict[str, str]:
        ...

    def validate(self, request: GenerationRequest) -> None:
        """Reject requests the provider would refuse. Raises InvalidRequest."""
        if request.prompt and len(request.prompt) > MAX_PROMPT_LENGTH:
            raise InvalidRequest(f"Prompt is longer than {MAX_PROMPT_LENGTH} characters")

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> str:
        """Start a provider job. Returns the provider task id."""
        ...

    @abstractmethod
    async def fetch_status(self, task_id: str) -> RawStatus:
        """Query the provider once for the status of a task."""
        ...

    @abstractmethod
    async def fetch_result(self, task_id: str, status: RawStatus) -> Artifact:
        """Retrieve the artifact of a task that reported success."""
        ...

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _safe(self, message: str) -> str:
        return scrub(message, [self._token])

    async def _post_with_retries(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        """POST, retrying only transport failures. Provider answers are returned as-is."""
        attempts = self.submit_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._client.post(url, json=payload, headers=self.auth_headers())
            except httpx.TransportError as exc:
                logger.warning(
                    "%s submit attempt %d/%d failed: %s",
                    self.provider_name, attempt, attempts, self._safe(str(exc)),
                )
                if attempt == attempts:
                    raise SubmissionError(
                        f"Could not reach {self.provider_name}", provider=self.provider_name
                    ) from exc
                await asyncio.sleep(self.submit_retry_delay * attempt)
        raise SubmissionError(provider=self.provider_name)

    async def _get_json(self, url: str, error_cls, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a JSON object, turning every transport or format problem into error_cls."""
        try:
            response = await self._client.get(url, params=params, headers=self.auth_headers())
        except httpx.TransportError as exc:
            raise error_cls(
                self._safe(f"Could not reach {self.provider_name}: {type(exc).__name__}"),
                provider=self.provider_name,
            ) from exc
        if response.status_code >= 400:
            raise error_cls(
                f"{self.provider_name} returned HTTP {response.status_code}",
                provider=self.provider_name,
            )
        return self._json_object(response, error_cls)

    def _json_object(self, response: httpx.Response, error_cls) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise error_cls(
                f"{self.provider_name} returned a malformed response", provider=self.provider_name
            )
        if not isinstance(data, dict):
            raise error_cls(
                f"{self.provider_name} returned a malformed response", provider=self.provider_name
            )
        return data


def log_messages(logs: Any) -> List[str]:
    """Extract message strings from a provider log list."""
    if not isinstance(logs, list):
        return []
    messages = []
    for entry in logs:
        if isinstance(entry, dict) and entry.get("message"):
            messages.append(str(entry["message"]))
        elif isinstance(entry, str) and entry:
            messages.append(entry)
    return messages

"""Maps provider status vocabularies onto NormalizedStatus."""

import logging
from typing import Dict, Optional

from app.jobs.models import NormalizedStatus

logger = logging.getLogger(__name__)

_VOCABULARY: Dict[str, Dict[str, NormalizedStatus]] = {
    # fal.ai queue
    "image": {
        "IN_QUEUE": NormalizedStatus.QUEUED,
        "IN_PROGRESS": NormalizedStatus.PROCESSING,
        "COMPLETED": NormalizedStatus.SUCCESS,
        "FAILED": NormalizedStatus.FAILURE,
        "ERROR": NormalizedStatus.FAILURE,
    },
    # MiniMax video tasks ("Fail" is what the API sends, "Failed" is documented)
    "video": {
        "QUEUEING": NormalizedStatus.QUEUED,
        "PREPARING": NormalizedStatus.QUEUED,
        "PROCESSING": NormalizedStatus.PROCESSING,
        "SUCCESS": NormalizedStatus.SUCCESS,
        "FAIL": NormalizedStatus.FAILURE,
        "FAILED": NormalizedStatus.FAILURE,
    },
}


def normalize(provider_kind: str, raw_status: Optional[str]) -> NormalizedStatus:
    """Normalize a raw provider status. Unrecognized values map to UNKNOWN."""
    table = _VOCABULARY.get(provider_kind)
    if table is None:
        logger.warning("No status vocabulary for provider kind '%s'", provider_kind)
        return NormalizedStatus.UNKNOWN

    key = (raw_status or "").strip().upper()
    status = table.get(key)
    if status is None:
        logger.warning("Unrecognized %s status %r, continuing to poll", provider_kind, raw_status)
        return NormalizedStatus.UNKNOWN
    return status


def known_statuses(provider_kind: str) -> Dict[str, NormalizedStatus]:
    return dict(_VOCABULARY.get(provider_kind, {}))

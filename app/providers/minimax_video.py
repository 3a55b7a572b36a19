"""Video generation through the MiniMax task API.

Every MiniMax response carries a `base_resp` block. A non-zero
`base_resp.status_code` is a provider error even when the HTTP status is 200.
"""

import base64
import io
import logging
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from app.jobs.errors import (
    InvalidRequest,
    PollError,
    ProviderBusinessError,
    ResultFetchError,
    SubmissionError,
)
from app.jobs.models import Artifact, ArtifactFile, GenerationRequest, RawStatus
from app.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

API_ERROR_CODES: Dict[int, str] = {
    1000: "Unknown error",
    1001: "Timeout",
    1002: "Rate limit exceeded",
    1004: "Authentication failed",
    1008: "Insufficient account balance",
    1013: "Internal service error",
    1026: "Video description contains sensitive content",
    1027: "Generated video contains sensitive content",
    1039: "Rate limit of tokens exceeded",
    2013: "Invalid parameters",
}

SUPPORTED_IMAGE_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png"}
MAX_IMAGE_BYTES = 20 * 1024 * 1024


def describe_error_code(code: int, status_msg: Optional[str] = None) -> str:
    if code in API_ERROR_CODES:
        return API_ERROR_CODES[code]
    return status_msg or f"Video provider error {code}"


def image_to_data_url(data: bytes) -> str:
    """Encode a JPEG or PNG image as a base64 data URL."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        raise InvalidRequest("First frame image could not be read")
    content_type = SUPPORTED_IMAGE_FORMATS.get(fmt or "")
    if content_type is None:
        raise InvalidRequest("First frame image must be JPEG or PNG")
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


class MiniMaxVideoAdapter(ProviderAdapter):
    kind = "video"
    provider_name = "MiniMax"

    def __init__(
        self,
        token: str,
        group_id: str = "",
        base_url: str = "https://api.minimaxi.chat/v1",
        model: str = "video-01",
        **kwargs,
    ):
        super().__init__(token, **kwargs)
        self.group_id = group_id
        self.base_url = base_url.rstrip("/")
        self.model = model

    def auth_headers(self) -> Dict[str, str]:
        return {"authorization": f"Bearer {self._token}", "content-type": "application/json"}

    def validate(self, request: GenerationRequest) -> None:
        has_prompt = bool(request.prompt and request.prompt.strip())
        if not has_prompt and not request.image:
            raise InvalidRequest("Provide a description or a first frame image")
        if request.image is not None:
            if len(request.image) > MAX_IMAGE_BYTES:
                raise InvalidRequest("First frame image is larger than 20MB")
            image_to_data_url(request.image)
        super().validate(request)

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        params = dict(request.params)
        callback_url = params.pop("callback_url", None)
        payload: Dict[str, Any] = {"model": self.model, "prompt_optimizer": True}
        payload.update(params)

        # Prompt and first frame only ever come from the validated request
        payload.pop("prompt", None)
        payload.pop("first_frame_image", None)
        if request.prompt and request.prompt.strip():
            payload["prompt"] = request.prompt.strip()
        if request.image:
            payload["first_frame_image"] = image_to_data_url(request.image)
        if callback_url:
            payload["callback_url"] = callback_url
        return payload

    def _check_base_resp(self, data: Dict[str, Any]) -> None:
        base_resp = data.get("base_resp")
        if not isinstance(base_resp, dict):
            return
        code = base_resp.get("status_code", 0)
        if code:
            status_msg = base_resp.get("status_msg")
            raise ProviderBusinessError(
                self._safe(describe_error_code(code, status_msg)),
                code=code,
                provider=self.provider_name,
            )

    async def submit(self, request: GenerationRequest) -> str:
        response = await self._post_with_retries(f"{self.base_url}/video_generation", self.build_payload(request))

        if response.status_code >= 400:
            detail = None
            try:
                body = response.json()
                detail = (body.get("base_resp") or {}).get("status_msg")
            except (ValueError, AttributeError):
                pass
            raise SubmissionError(
                self._safe(detail) if detail else "Failed to start generation",
                provider=self.provider_name,
            )

        data = self._json_object(response, SubmissionError)
        self._check_base_resp(data)
        task_id = data.get("task_id")
        if not task_id:
            raise SubmissionError("No task ID received", provider=self.provider_name)
        logger.info("MiniMax task %s started with model %s", task_id, self.model)
        return str(task_id)

    async def fetch_status(self, task_id: str) -> RawStatus:
        data = await self._get_json(
            f"{self.base_url}/query/video_generation", PollError, params={"task_id": task_id}
        )
        self._check_base_resp(data)
        status = data.get("status")
        if not isinstance(status, str):
            raise PollError("MiniMax status response has no status", provider=self.provider_name)

        base_resp = data.get("base_resp") or {}
        status_msg = base_resp.get("status_msg")
        message = status_msg if status_msg and status_msg.lower() != "success" else None
        return RawStatus(
            status=status,
            message=message,
            code=base_resp.get("status_code"),
            payload=data,
        )

    async def fetch_result(self, task_id: str, status: RawStatus) -> Artifact:
        file_id = status.payload.get("file_id")
        if not file_id:
            raise ResultFetchError("Video finished without a file id", provider=self.provider_name)

        data = await self._get_json(
            f"{self.base_url}/files/retrieve",
            ResultFetchError,
            params={"GroupId": self.group_id, "file_id": file_id},
        )
        self._check_base_resp(data)

        file_info = data.get("file") if isinstance(data.get("file"), dict) else data
        download_url = file_info.get("download_url")
        if not download_url:
            raise ResultFetchError("Failed to get video URL", provider=self.provider_name)

        return Artifact(
            kind=self.kind,
            files=[
                ArtifactFile(
                    url=download_url,
                    content_type="video/mp4",
                    filename=file_info.get("filename"),
                )
            ],
            metadata={"file_id": str(file_id), "task_id": task_id},
        )

"""Image generation through the fal.ai queue API."""

import logging
from typing import Any, Dict

from app.jobs.errors import (
    InvalidRequest,
    PollError,
    ProviderBusinessError,
    ResultFetchError,
    SubmissionError,
)
from app.jobs.models import Artifact, ArtifactFile, GenerationRequest, RawStatus
from app.providers.base import ProviderAdapter, log_messages

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_PARAMS: Dict[str, Any] = {
    "image_size": "landscape_4_3",
    "num_inference_steps": 28,
    "guidance_scale": 3.5,
    "num_images": 1,
    "enable_safety_checker": True,
    "output_format": "jpeg",
}


class FalImageAdapter(ProviderAdapter):
    kind = "image"
    provider_name = "fal.ai"

    def __init__(self, token: str, queue_url: str = "https://queue.fal.run", model: str = "fal-ai/flux-lora", **kwargs):
        super().__init__(token, **kwargs)
        self.queue_url = queue_url.rstrip("/")
        self.model = model

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self._token}", "Content-Type": "application/json"}

    def validate(self, request: GenerationRequest) -> None:
        if not request.prompt or not request.prompt.strip():
            raise InvalidRequest("Prompt is required")
        super().validate(request)

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload = dict(DEFAULT_IMAGE_PARAMS)
        payload.update(request.params)
        payload["prompt"] = request.prompt.strip()
        return payload

    async def submit(self, request: GenerationRequest) -> str:
        response = await self._post_with_retries(f"{self.queue_url}/{self.model}", self.build_payload(request))

        if response.status_code == 429:
            raise ProviderBusinessError("Rate limit exceeded", code=429, provider=self.provider_name)
        if response.status_code >= 400:
            raise SubmissionError(self._error_detail(response), provider=self.provider_name)

        data = self._json_object(response, SubmissionError)
        request_id = data.get("request_id")
        if not request_id:
            raise SubmissionError("No request ID received", provider=self.provider_name)
        logger.info("fal.ai request %s queued on %s", request_id, self.model)
        return str(request_id)

    async def fetch_status(self, task_id: str) -> RawStatus:
        data = await self._get_json(
            f"{self.queue_url}/{self.model}/requests/{task_id}/status",
            PollError,
            params={"logs": 1},
        )
        status = data.get("status")
        if not isinstance(status, str):
            raise PollError("fal.ai status response has no status", provider=self.provider_name)

        output = data.get("output") if isinstance(data.get("output"), dict) else {}
        message = data.get("error") or output.get("error")
        return RawStatus(
            status=status,
            logs=log_messages(data.get("logs")),
            message=str(message) if message else None,
            payload=data,
        )

    async def fetch_result(self, task_id: str, status: RawStatus) -> Artifact:
        output = status.payload.get("output")
        if not (isinstance(output, dict) and output.get("images")):
            output = await self._get_json(
                f"{self.queue_url}/{self.model}/requests/{task_id}", ResultFetchError
            )

        images = output.get("images")
        if not isinstance(images, list) or not images:
            raise ResultFetchError("No image URL in completed result", provider=self.provider_name)

        files = []
        for image in images:
            if not isinstance(image, dict) or not image.get("url"):
                raise ResultFetchError("No image URL in completed result", provider=self.provider_name)
            files.append(
                ArtifactFile(
                    url=image["url"],
                    content_type=image.get("content_type") or "image/jpeg",
                    width=image.get("width"),
                    height=image.get("height"),
                )
            )

        metadata = {k: output[k] for k in ("prompt", "has_nsfw_concepts", "timings") if k in output}
        return Artifact(kind=self.kind, files=files, seed=output.get("seed"), metadata=metadata)

    def _error_detail(self, response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            detail = data.get("detail") or data.get("error")
            if isinstance(detail, str) and detail:
                return self._safe(detail)
        return f"fal.ai returned HTTP {response.status_code}"

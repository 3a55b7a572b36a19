"""Job management API: submit generation jobs, poll status, stream progress, cancel."""

import base64
import binascii
import json
from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional

from app.jobs.dispatcher import UnknownJobKind
from app.jobs.errors import InvalidRequest
from app.jobs.models import GenerationRequest, JobSnapshot

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def _require_dispatcher():
    if _dispatcher is None or not _dispatcher.running:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


class ImageJobRequest(BaseModel):
    prompt: str
    params: Dict[str, Any] = {}


class VideoJobRequest(BaseModel):
    prompt: Optional[str] = None
    first_frame_image: Optional[str] = None  # base64 or data URL
    prompt_optimizer: bool = True
    callback_url: Optional[str] = None
    params: Dict[str, Any] = {}


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


def decode_image(value: str) -> bytes:
    """Decode a base64 string, with or without a data URL prefix."""
    if value.startswith("data:"):
        _, _, value = value.partition(",")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="first_frame_image is not valid base64")


def serialize_job(job: JobSnapshot) -> Dict[str, Any]:
    response = {
        "job_id": job.id,
        "kind": job.kind,
        "status": job.state.value,
        "progress": job.progress_percent,
        "logs": list(job.log_lines),
        "provider_task_id": job.provider_task_id,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.result:
        response["result"] = job.result.model_dump(mode="json")
    if job.error:
        response["error"] = job.error.model_dump(mode="json")
    return response


async def _submit(kind: str, request: GenerationRequest) -> JobSubmitResponse:
    dispatcher = _require_dispatcher()
    try:
        job = await dispatcher.submit(kind, request)
    except UnknownJobKind as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JobSubmitResponse(
        job_id=job.id,
        status=job.state.value,
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.post("/jobs/image", response_model=JobSubmitResponse)
async def submit_image_job(request: ImageJobRequest):
    """Submit a text-to-image job."""
    return await _submit("image", GenerationRequest(prompt=request.prompt, params=request.params))


@router.post("/jobs/video", response_model=JobSubmitResponse)
async def submit_video_job(request: VideoJobRequest):
    """Submit a text-to-video or image-to-video job."""
    params = dict(request.params)
    params["prompt_optimizer"] = request.prompt_optimizer
    if request.callback_url:
        params["callback_url"] = request.callback_url
    image = decode_image(request.first_frame_image) if request.first_frame_image else None
    return await _submit("video", GenerationRequest(prompt=request.prompt, image=image, params=params))


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status, logs and result of a job."""
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return serialize_job(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Stop polling a job. The provider-side task is left alone."""
    dispatcher = _require_dispatcher()
    cancelled = await dispatcher.cancel(job_id)
    if cancelled is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "cancelled": cancelled}


@router.get("/jobs/{job_id}/events")
async def stream_job_events(job_id: str):
    """Server-sent events with every progress update of a job, ending with the final one."""
    dispatcher = _require_dispatcher()
    try:
        events = dispatcher.subscribe(job_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if events is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_source():
        try:
            async for event in events:
                name = "final" if event.final else "progress"
                payload = json.dumps(event.model_dump(mode="json"))
                yield f"event: {name}\ndata: {payload}\n\n"
        finally:
            # Frees the subscription when the client disconnects
            await events.aclose()

    return StreamingResponse(event_source(), media_type="text/event-stream")

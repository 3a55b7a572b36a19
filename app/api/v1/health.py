"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from app.api.v1 import jobs as jobs_api

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and dispatcher status."""
    dispatcher = jobs_api._dispatcher
    running = dispatcher is not None and dispatcher.running

    return {
        "status": "healthy" if running else "starting",
        "dispatcher_running": running,
        "active_jobs": dispatcher.active_count() if running else 0,
        "providers": dispatcher.kinds() if running else [],
        "python_version": sys.version,
        "platform": platform.platform(),
    }

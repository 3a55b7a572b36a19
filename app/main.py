"""Generation Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.api.v1 import jobs as jobs_api
from app.jobs.in_process_dispatcher import InProcessDispatcher
from app.providers.registry import build_registry

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting Generation Service on port %d", settings.port)

    registry = build_registry(settings)
    dispatcher = InProcessDispatcher(
        registry,
        config_for=settings.job_config,
        result_ttl_hours=settings.job_result_ttl_hours,
    )
    await dispatcher.start()
    logger.info("Job dispatcher started for kinds: %s", ", ".join(registry.kinds()))

    jobs_api.set_dispatcher(dispatcher)

    yield

    logger.info("Shutting down Generation Service")
    await dispatcher.stop()
    await registry.aclose()
    jobs_api.set_dispatcher(None)


app = FastAPI(
    title="Generation Service",
    description="Image and video generation jobs on hosted AI providers",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = [o.strip() for o in (settings.cors_origins or "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins or ["http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port)

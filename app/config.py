"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional

from app.jobs.models import JobConfig


class Settings(BaseSettings):
    # Image provider (fal.ai queue)
    fal_key: str = ""
    fal_queue_url: str = "https://queue.fal.run"
    fal_model: str = "fal-ai/flux-lora"

    # Video provider (MiniMax)
    minimax_api_token: str = ""
    minimax_group_id: str = ""
    minimax_base_url: str = "https://api.minimaxi.chat/v1"
    minimax_model: str = "video-01"

    # Polling, per job kind
    image_poll_interval_ms: int = 1000
    image_timeout_ms: int = 5 * 60 * 1000
    video_poll_interval_ms: int = 2000
    video_timeout_ms: int = 5 * 60 * 1000

    # Transient error handling
    poll_max_retries: int = 3
    poll_retry_delay_ms: int = 500
    max_skipped_polls: int = 5
    submit_max_retries: int = 2
    submit_retry_delay_ms: int = 1000
    http_timeout_seconds: float = 30.0

    # Progress stream
    max_buffered_log_lines: int = 200

    # Finished jobs are dropped from memory after this long
    job_result_ttl_hours: int = 2

    port: int = 8001
    log_level: str = "INFO"
    cors_origins: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def job_config(self, kind: str) -> JobConfig:
        """Build the polling configuration for a job kind."""
        if kind == "image":
            interval, timeout = self.image_poll_interval_ms, self.image_timeout_ms
        elif kind == "video":
            interval, timeout = self.video_poll_interval_ms, self.video_timeout_ms
        else:
            raise ValueError(f"Unknown job kind '{kind}'")

        return JobConfig(
            poll_interval_ms=interval,
            timeout_ms=timeout,
            poll_max_retries=self.poll_max_retries,
            poll_retry_delay_ms=self.poll_retry_delay_ms,
            max_skipped_polls=self.max_skipped_polls,
            max_buffered_log_lines=self.max_buffered_log_lines,
        )


settings = Settings()

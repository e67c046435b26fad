from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis / job store
    store_backend: str = "redis"  # redis, or memory for a single process
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "bookscan"
    queue_name: str = "ocr-processing"

    # Worker
    worker_concurrency: int = 2
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    job_timeout_seconds: Optional[float] = 1800.0
    poll_interval_seconds: float = 1.0
    shutdown_grace_seconds: float = 30.0
    lease_seconds: float = 60.0

    # Retention of terminal jobs
    keep_completed: int = 100
    keep_failed: int = 50

    # OCR
    default_language: str = "swe"
    tesseract_cmd: Optional[str] = None
    tesseract_timeout_seconds: float = 0.0
    tesseract_config: str = ""

    # Frame extraction
    ffmpeg_cmd: str = "ffmpeg"
    ffprobe_cmd: str = "ffprobe"
    extraction_fps: float = 2.0
    max_frames: int = 200
    window_seconds: float = 2.0
    min_frame_score: float = 0.3
    detect_rotation: bool = False
    temp_directory: Optional[str] = None

    # Page archives
    archive_keep_width: float = 0.85

    # Chapter detection
    max_page_number: int = 2000
    max_page_jump: int = 10

    # Application
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @property
    def uses_redis(self) -> bool:
        return self.store_backend.lower() == "redis"

    class Config:
        env_prefix = "BOOKSCAN_"
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()

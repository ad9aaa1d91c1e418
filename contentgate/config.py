from pathlib import Path
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./contentgate.db"

    # JWT
    secret_key: str = "your-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Video stream token expiry (minutes)
    video_stream_token_expire_minutes: int = 60 * 4

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    # Storage root for resources/ and videos/ (empty = <repo>/storage)
    storage_dir: str = ""

    # Rasterization (pdftoppm first, ImageMagick second, placeholder last)
    raster_dpi: int = 150
    raster_timeout_seconds: int = 60
    pdftoppm_path: str = "pdftoppm"
    imagemagick_path: str = "convert"

    # Video packaging
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    transcode_timeout_seconds: int = 3600
    transcode_workers: int = 2
    hls_segment_seconds: int = 10
    video_encrypt: bool = True
    video_watermark_text: str = ""
    video_watermark_position: str = "topRight"
    max_video_upload_mb: int = 500
    max_thumbnail_upload_mb: int = 5

    max_document_upload_mb: int = 100

    # Access policy
    anonymous_preview_units: int = 2
    default_preview_duration_seconds: int = 20

    # Violation ledger: strikes before the session is terminated
    violation_lock_threshold: int = 3

    class Config:
        env_file = ".env"

    def storage_root(self) -> Path:
        if self.storage_dir:
            return Path(self.storage_dir)
        return Path(__file__).resolve().parent.parent / "storage"


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Configuration management for mediadrop using pydantic-settings."""

import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with automatic directory creation.

    Settings can be configured via environment variables:
    - MEDIADROP_DEBUG: Enable debug mode (verbose logging)
    - MEDIADROP_DATA_DIR: Base directory for media, chunk sessions and the database
    - MEDIADROP_MEDIA_DIR: Optional override for the media root (chunks live beside it)
    - MEDIADROP_HOST / MEDIADROP_PORT: Server bind address
    - MEDIADROP_API_URL: Server API URL for the upload client
    - MEDIADROP_UPLOAD_TIMEOUT: Client request timeout in seconds
    - MEDIADROP_CHUNK_SIZE: Bytes per chunk sent by the upload client
    - MEDIADROP_CHUNK_THRESHOLD: Files at or above this size are uploaded in chunks
    - MEDIADROP_UPLOAD_MAX_RETRIES: Attempts per chunk before the upload fails
    - MEDIADROP_UPLOAD_INITIAL_RETRY_DELAY: First backoff delay in seconds (doubles per attempt)
    - MEDIADROP_CHUNK_RETENTION_HOURS: Age after which an upload session is abandoned
    - MEDIADROP_CHUNK_SWEEP_INTERVAL: Seconds between abandoned-session sweeps
    - MEDIADROP_TRANSCODE_QUEUE_SIZE: Capacity of the in-process transcode queue
    - MEDIADROP_TRANSCODE_POLL_INTERVAL: Idle seconds before the transcode worker rescans the DB
    - MEDIADROP_FFMPEG_BINARY / MEDIADROP_FFPROBE_BINARY: Video tool executables
    - MEDIADROP_EVENT_HEARTBEAT_SECONDS: Keep-alive interval on the status stream
    - MEDIADROP_START_WORKERS: Start background workers with the server
    """

    debug: bool = Field(default=False, alias="MEDIADROP_DEBUG")
    host: str = Field(default="0.0.0.0", alias="MEDIADROP_HOST")
    port: int = Field(default=8090, alias="MEDIADROP_PORT")

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / "mediadrop",
        alias="MEDIADROP_DATA_DIR",
        description="Base directory for server data (media, chunk sessions, database)",
    )
    media_dir: Optional[Path] = Field(
        default=None,
        alias="MEDIADROP_MEDIA_DIR",
        description="Optional override for the media root; chunk sessions go in a sibling 'chunks' dir",
    )

    api_url: str = Field(
        default="http://localhost:8090/api",
        alias="MEDIADROP_API_URL",
    )
    upload_timeout: int = Field(
        default=120,
        alias="MEDIADROP_UPLOAD_TIMEOUT",
        description="Client request timeout in seconds (the final chunk waits for image processing)",
    )
    chunk_size: int = Field(
        default=5 * 1024 * 1024,
        alias="MEDIADROP_CHUNK_SIZE",
        description="Bytes per uploaded chunk",
    )
    chunk_threshold: int = Field(
        default=5 * 1024 * 1024,
        alias="MEDIADROP_CHUNK_THRESHOLD",
        description="Files at or above this size use the chunked upload path",
    )
    upload_max_retries: int = Field(
        default=10,
        alias="MEDIADROP_UPLOAD_MAX_RETRIES",
        description="Attempts per chunk before the whole upload fails",
    )
    upload_initial_retry_delay: float = Field(
        default=1.0,
        alias="MEDIADROP_UPLOAD_INITIAL_RETRY_DELAY",
        description="Backoff before the second attempt; doubles for every further attempt",
    )
    connectivity_probe_interval: float = Field(
        default=2.0,
        alias="MEDIADROP_CONNECTIVITY_PROBE_INTERVAL",
        description="Seconds between connectivity probes while the client is offline",
    )

    chunk_retention_hours: float = Field(
        default=24.0,
        alias="MEDIADROP_CHUNK_RETENTION_HOURS",
        description="Upload sessions untouched for longer than this are deleted",
    )
    chunk_sweep_interval: int = Field(
        default=21600,
        alias="MEDIADROP_CHUNK_SWEEP_INTERVAL",
        description="Seconds between abandoned-session sweeps (default: 21600 = 6 hours)",
    )

    transcode_queue_size: int = Field(
        default=64,
        alias="MEDIADROP_TRANSCODE_QUEUE_SIZE",
        description="Maximum queued transcode wake-ups",
    )
    transcode_poll_interval: float = Field(
        default=60.0,
        alias="MEDIADROP_TRANSCODE_POLL_INTERVAL",
        description="Idle seconds before the transcode worker rescans for pending videos",
    )
    ffmpeg_binary: str = Field(default="ffmpeg", alias="MEDIADROP_FFMPEG_BINARY")
    ffprobe_binary: str = Field(default="ffprobe", alias="MEDIADROP_FFPROBE_BINARY")
    ffmpeg_timeout: Optional[int] = Field(
        default=None,
        alias="MEDIADROP_FFMPEG_TIMEOUT",
        description="Optional timeout in seconds for a single ffmpeg run (unset = no limit)",
    )
    video_crf: int = Field(default=23, alias="MEDIADROP_VIDEO_CRF")
    video_preset: str = Field(default="medium", alias="MEDIADROP_VIDEO_PRESET")

    thumbnail_width: int = Field(default=400, alias="MEDIADROP_THUMBNAIL_WIDTH")
    thumbnail_quality: int = Field(default=80, alias="MEDIADROP_THUMBNAIL_QUALITY")
    display_jpeg_quality: int = Field(default=98, alias="MEDIADROP_DISPLAY_JPEG_QUALITY")

    event_heartbeat_seconds: float = Field(
        default=30.0,
        alias="MEDIADROP_EVENT_HEARTBEAT_SECONDS",
        description="Keep-alive comment interval on the status stream",
    )
    start_workers: bool = Field(
        default=True,
        alias="MEDIADROP_START_WORKERS",
        description="Start the transcode and sweeper threads together with the server",
    )

    @field_validator("data_dir", "media_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Optional[Union[str, Path]]) -> Optional[Path]:
        if v is None or v == "":
            return None
        return Path(str(v)).expanduser().resolve()

    @field_validator("chunk_size", "chunk_threshold", "upload_max_retries", "transcode_queue_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    model_config = {
        "env_prefix": "",
        "populate_by_name": True,
        "extra": "ignore",
        "env_file": ["mediadrop.env", ".env"],
        "env_file_encoding": "utf-8",
    }

    @property
    def media_path(self) -> Path:
        """Root of the persisted media tree."""
        return self.media_dir or (self.data_dir / "media")

    @property
    def chunks_path(self) -> Path:
        """Root of the upload session directories, a sibling of the media root."""
        return self.media_path.parent / "chunks"

    @property
    def originals_path(self) -> Path:
        return self.media_path / "originals"

    @property
    def display_path(self) -> Path:
        return self.media_path / "display"

    @property
    def thumbnails_path(self) -> Path:
        return self.media_path / "thumbnails"

    @property
    def web_videos_path(self) -> Path:
        return self.media_path / "web-videos"

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database file."""
        return self.data_dir / "db" / "media.db"

    @property
    def chunk_retention_seconds(self) -> float:
        return self.chunk_retention_hours * 3600

    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        directories = [
            self.data_dir,
            self.media_path,
            self.originals_path,
            self.display_path,
            self.thumbnails_path,
            self.web_videos_path,
            self.chunks_path,
            self.db_path.parent,
        ]
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    @model_validator(mode="after")
    def _ensure_dirs_on_init(self) -> "Settings":
        """Automatically create directories after settings initialization."""
        try:
            self.ensure_directories()
        except PermissionError:
            if not os.access(self.data_dir.parent, os.W_OK):
                self.data_dir = Path(tempfile.gettempdir()) / "mediadrop"
            self.ensure_directories()
        return self


# Global settings instance - directories are created on import
settings = Settings()

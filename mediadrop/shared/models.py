"""Data models for mediadrop using Pydantic."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class TranscodingStatus(str, Enum):
    """Lifecycle of a media asset.

    Images are created COMPLETED. Videos are created PENDING and move
    forward only: PENDING -> PROCESSING -> COMPLETED | FAILED.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TranscodingStatus.COMPLETED, TranscodingStatus.FAILED)


_STATUS_RANK = {
    TranscodingStatus.PENDING: 0,
    TranscodingStatus.PROCESSING: 1,
    TranscodingStatus.COMPLETED: 2,
    TranscodingStatus.FAILED: 2,
}


def normalize_rotation(degrees: int) -> int:
    """Fold any rotation into the 0-359 range."""
    return ((int(degrees) % 360) + 360) % 360


class MediaAsset(BaseModel):
    """A persisted photo or video and the paths of its renditions.

    Paths are relative to the media root. ``display_path`` and
    ``thumb_path`` stay None for videos until transcoding completes.
    """

    model_config = ConfigDict(use_enum_values=False)

    id: int
    kind: MediaKind
    original_path: str
    original_filename: Optional[str] = None
    display_path: Optional[str] = None
    thumb_path: Optional[str] = None
    rotation: int = 0
    capture_date: Optional[str] = None
    uploaded_at: str
    transcoding_status: TranscodingStatus
    error: Optional[str] = None

    @field_validator("rotation", mode="before")
    @classmethod
    def fold_rotation(cls, v: Any) -> int:
        return normalize_rotation(v or 0)

    def to_api(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used by the HTTP API."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "originalPath": self.original_path,
            "originalFilename": self.original_filename,
            "displayPath": self.display_path,
            "thumbPath": self.thumb_path,
            "rotationDegrees": self.rotation,
            "captureDate": self.capture_date,
            "uploadedAt": self.uploaded_at,
            "transcodingStatus": self.transcoding_status.value,
            "error": self.error,
        }


class StatusChangeEvent(BaseModel):
    """Published whenever a media asset's transcoding status changes."""

    asset_id: int
    status: TranscodingStatus

    event_type: str = "status-change"

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.event_type, "assetId": self.asset_id, "status": self.status.value}


class TranscodeResult(BaseModel):
    """Outcome of one transcode worker invocation."""

    success: bool
    message: str
    asset_id: Optional[int] = None

    def to_api(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "assetId": self.asset_id}


class SweepResult(BaseModel):
    """Outcome of one abandoned-session sweep."""

    deleted: int = 0
    errors: list[str] = []

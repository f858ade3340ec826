"""Chunked-upload wire contract shared by the server and the upload client."""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mediadrop.shared.models import MediaKind


CHUNK_FILE_PREFIX = "chunk-"
SESSION_ID_PATTERN = r"^[A-Za-z0-9._-]{1,200}$"

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9.-]")


def generate_diagnostic_id() -> str:
    """Generate a UUID string for diagnostics."""

    return str(uuid.uuid4())


def sanitize_name(value: str) -> str:
    """Replace every character outside ``[A-Za-z0-9.-]`` with an underscore."""

    return _UNSAFE_CHARS_RE.sub("_", value)


def compute_session_id(filename: str, size: int, modified_ms: int) -> str:
    """Derive the upload session id from a file's name, size and mtime.

    The id is a pure function of those attributes, so re-selecting the
    same file after a crash or reload resumes the existing session.

    Args:
        filename: Base name of the file as the user sees it.
        size: File size in bytes.
        modified_ms: Last-modified time in milliseconds since the epoch.

    Returns:
        Filesystem-safe session identifier.
    """

    return sanitize_name(f"{filename}-{size}-{int(modified_ms)}")


def is_valid_session_id(session_id: str) -> bool:
    """Return True when ``session_id`` is safe to use as a directory name."""

    if not session_id or session_id in (".", ".."):
        return False
    return bool(_SESSION_ID_RE.fullmatch(session_id))


def count_chunks(size: int, chunk_size: int) -> int:
    """Number of chunks needed for ``size`` bytes (an empty file still needs one)."""

    return max(1, math.ceil(size / chunk_size))


def chunk_file_name(index: int) -> str:
    return f"{CHUNK_FILE_PREFIX}{index}"


def parse_chunk_file_name(name: str) -> int | None:
    """Return the chunk index encoded in ``name`` or None for foreign files."""

    if not name.startswith(CHUNK_FILE_PREFIX):
        return None
    suffix = name[len(CHUNK_FILE_PREFIX):]
    if not suffix.isdigit():
        return None
    return int(suffix)


def unique_asset_filename(filename: str, timestamp_ms: int) -> str:
    """Build the stable, timestamp-qualified name an assembled upload is stored under."""

    sanitized = sanitize_name(Path(filename).name) or "upload"
    path = Path(sanitized)
    return f"{path.stem}-{timestamp_ms}{path.suffix}"


def parse_client_modified(value: str | int | float | None) -> str | None:
    """Convert a client-reported last-modified value to an ISO-8601 UTC string.

    Accepts milliseconds since the epoch (the browser/File API unit) or an
    ISO-8601 string. Anything unparseable yields None.
    """

    if value is None or value == "":
        return None
    try:
        millis = float(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat()
    if math.isnan(millis) or math.isinf(millis):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


class ChunkUploadForm(BaseModel):
    """Multipart form fields accompanying one uploaded chunk."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    chunk_index: int = Field(alias="chunkIndex", ge=0, description="Zero-based chunk index")
    total_chunks: int = Field(alias="totalChunks", gt=0, description="Declared number of chunks")
    filename: str = Field(min_length=1, description="Original client filename")
    session_id: str = Field(alias="sessionId", description="Client-derived session id")
    kind: MediaKind = Field(description="Declared media kind")
    client_modified_at: str | None = Field(
        default=None,
        alias="clientModifiedAt",
        description="Client last-modified time (ms since epoch or ISO-8601)",
    )

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, value: str) -> str:
        """Reject ids that are unsafe as a directory name."""

        if not is_valid_session_id(value):
            raise ValueError("sessionId must match SESSION_ID_PATTERN")
        return value

    @field_validator("client_modified_at", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return str(value)

    @model_validator(mode="after")
    def validate_index_in_range(self) -> "ChunkUploadForm":
        if self.chunk_index >= self.total_chunks:
            raise ValueError("chunkIndex must be smaller than totalChunks")
        return self

"""Filesystem-backed storage for in-progress chunked uploads."""

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from mediadrop.shared.config import settings
from mediadrop.shared.contract import chunk_file_name, is_valid_session_id, parse_chunk_file_name
from mediadrop.shared.errors import InvalidSessionError

logger = logging.getLogger(__name__)


class ChunkStore:
    """One directory per upload session, one file per received chunk.

    Chunk blobs are write-once: a second write for an index that already
    exists is ignored, so client retries after a lost response are safe.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else settings.chunks_path
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise InvalidSessionError(f"Invalid session id: {session_id!r}")
        return self.root / session_id

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / chunk_file_name(index)

    def list_received_indices(self, session_id: str) -> List[int]:
        """Indices already stored for a session; unknown sessions have none."""
        session_dir = self.session_dir(session_id)
        if not session_dir.is_dir():
            return []
        indices = []
        for entry in session_dir.iterdir():
            index = parse_chunk_file_name(entry.name)
            if index is not None and entry.is_file():
                indices.append(index)
        return sorted(indices)

    def count_chunks(self, session_id: str) -> int:
        return len(self.list_received_indices(session_id))

    def accept_chunk(self, session_id: str, index: int, data: bytes) -> int:
        """Store one chunk blob and return how many chunks the session now holds.

        The blob is written to a temp file in the session directory and
        renamed into place, so a crash never leaves a truncated
        ``chunk-N`` behind.
        """
        if index < 0:
            raise ValueError(f"Chunk index must be non-negative, got {index}")

        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        target = session_dir / chunk_file_name(index)

        if target.exists():
            logger.debug(f"Chunk {index} of session {session_id} already stored, ignoring rewrite")
        else:
            fd, tmp_name = tempfile.mkstemp(prefix=".incoming-", dir=str(session_dir))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                # link() fails if another request stored the same index meanwhile
                try:
                    os.link(tmp_name, target)
                except FileExistsError:
                    logger.debug(f"Chunk {index} of session {session_id} raced with a duplicate write")
            finally:
                os.unlink(tmp_name)

        return self.count_chunks(session_id)

    def discard_chunks(self, session_id: str, total_chunks: int) -> None:
        """Delete chunk blobs 0..total-1 and best-effort remove the session directory."""
        session_dir = self.session_dir(session_id)
        for index in range(total_chunks):
            (session_dir / chunk_file_name(index)).unlink(missing_ok=True)
        try:
            session_dir.rmdir()
        except OSError as e:
            # Leftovers are reclaimed by the abandoned-session sweeper
            logger.warning(f"Could not remove session directory {session_dir}: {e}")

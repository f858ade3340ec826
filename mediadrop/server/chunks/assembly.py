"""Concatenate a completed upload session into its final asset file."""

import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mediadrop.server.chunks.store import ChunkStore
from mediadrop.shared.config import settings
from mediadrop.shared.contract import unique_asset_filename
from mediadrop.shared.errors import AssemblyError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


@dataclass
class AssembledFile:
    """An upload that has been written to the originals directory."""
    path: Path
    filename: str
    size: int


class AssemblyService:
    """Builds final asset files from chunk sessions.

    The destination is written under a hidden ``.partial`` name and
    renamed only after every chunk has been copied and flushed, so a
    half-written original is never visible to the media pipeline.
    """

    def __init__(self, chunk_store: ChunkStore, originals_dir: Optional[Path] = None):
        self.chunk_store = chunk_store
        self.originals_dir = Path(originals_dir) if originals_dir is not None else settings.originals_path

    def is_complete(self, received: int, total_chunks: int) -> bool:
        return received == total_chunks

    def assemble(self, session_id: str, filename: str, total_chunks: int) -> AssembledFile:
        """Concatenate chunks 0..total-1 in order and clean up the session.

        Raises:
            AssemblyError: A chunk is missing or unreadable, or the
                destination could not be written. The session is left
                intact in that case.
        """
        self.originals_dir.mkdir(parents=True, exist_ok=True)
        final_name = unique_asset_filename(filename, int(time.time() * 1000))
        final_path = self.originals_dir / final_name
        partial_path = self.originals_dir / f".{final_name}.partial"

        size = 0
        try:
            with open(partial_path, "wb") as out:
                for index in range(total_chunks):
                    chunk_path = self.chunk_store.chunk_path(session_id, index)
                    with open(chunk_path, "rb") as src:
                        shutil.copyfileobj(src, out, COPY_BUFFER_SIZE)
                    size = out.tell()
                out.flush()
                os.fsync(out.fileno())
            os.replace(partial_path, final_path)
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            logger.error(f"Assembly aborted for session {session_id}: {e}")
            raise AssemblyError(session_id, str(e)) from e

        logger.info(
            f"Assembled session {session_id}: {total_chunks} chunks, {size} bytes -> {final_name}"
        )
        self.chunk_store.discard_chunks(session_id, total_chunks)
        return AssembledFile(path=final_path, filename=final_name, size=size)

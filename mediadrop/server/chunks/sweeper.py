"""Deletion of upload sessions that were abandoned mid-way."""

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Optional

from mediadrop.shared.config import settings
from mediadrop.shared.models import SweepResult

logger = logging.getLogger(__name__)


def sweep_abandoned_sessions(
    chunks_root: Path,
    max_age_seconds: float,
    now: Optional[float] = None,
) -> SweepResult:
    """Delete session directories whose mtime is older than ``max_age_seconds``.

    A failure on one entry is recorded in ``errors`` and the sweep moves
    on to the next directory.
    """
    chunks_root = Path(chunks_root)
    if not chunks_root.exists():
        logger.debug("Chunks directory does not exist, nothing to clean up")
        return SweepResult()

    now = time.time() if now is None else now
    deleted = 0
    errors: list[str] = []

    try:
        entries = sorted(chunks_root.iterdir())
    except OSError as e:
        message = f"Chunk cleanup failed: {e}"
        logger.error(message)
        return SweepResult(deleted=0, errors=[message])

    for entry in entries:
        try:
            stats = entry.stat()
            if not entry.is_dir():
                continue
            age = now - stats.st_mtime
            if age > max_age_seconds:
                shutil.rmtree(entry)
                deleted += 1
                logger.info(
                    f"Deleted abandoned upload session {entry.name} ({age / 3600:.0f} hours old)"
                )
        except Exception as e:
            message = f"Failed to process {entry.name}: {e}"
            errors.append(message)
            logger.error(message)

    if deleted:
        logger.info(f"Chunk cleanup complete: {deleted} abandoned session(s) deleted")
    else:
        logger.debug("Chunk cleanup complete: no abandoned sessions found")
    return SweepResult(deleted=deleted, errors=errors)


class ChunkSweeperWorker(threading.Thread):
    """Background daemon that sweeps abandoned upload sessions.

    Sweeps once at startup, then every ``interval`` seconds (default 6h).
    """

    def __init__(
        self,
        chunks_root: Optional[Path] = None,
        max_age_seconds: Optional[float] = None,
        interval: Optional[float] = None,
    ):
        super().__init__(daemon=True, name="ChunkSweeperWorker")
        self.chunks_root = Path(chunks_root) if chunks_root is not None else settings.chunks_path
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.chunk_retention_seconds
        )
        self.interval = interval if interval is not None else settings.chunk_sweep_interval
        self._stop_event = threading.Event()
        logger.info("ChunkSweeperWorker initialized")

    def stop(self):
        """Signal the worker to stop."""
        logger.info("ChunkSweeperWorker stop signal received")
        self._stop_event.set()

    def sweep(self) -> SweepResult:
        return sweep_abandoned_sessions(self.chunks_root, self.max_age_seconds)

    def run(self):
        logger.info("ChunkSweeperWorker started")
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.exception(f"Chunk sweep error: {e}")

            self._stop_event.wait(self.interval)

        logger.info("ChunkSweeperWorker stopped")

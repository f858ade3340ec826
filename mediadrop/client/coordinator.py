"""Resumable, retrying upload of local media files.

One file at a time:
1. Derive the session id from (name, size, mtime).
2. Ask the server which chunk indices it already holds.
3. Send every missing chunk in ascending order, waiting out offline
   periods and retrying failures with exponential backoff.
"""

import logging
import mimetypes
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Union

import requests

from mediadrop.client.network import ConnectivityMonitor
from mediadrop.client.uploader import ChunkUploadClient
from mediadrop.client.wakelock import WakeLockManager
from mediadrop.shared.config import settings
from mediadrop.shared.contract import compute_session_id, count_chunks
from mediadrop.shared.errors import ChunkUploadError
from mediadrop.shared.models import MediaKind

logger = logging.getLogger(__name__)

# Not in every platform mimetypes table
mimetypes.add_type("image/heic", ".heic")
mimetypes.add_type("image/heif", ".heif")


class UploadState(str, Enum):
    UPLOADING = "uploading"
    WAITING = "waiting"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class UploadProgress:
    """Snapshot reported to the progress callback."""
    filename: str
    state: UploadState
    progress: float
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    attempt: int = 0
    error: Optional[str] = None


@dataclass
class UploadOutcome:
    path: Path
    success: bool
    response: Optional[dict] = None
    error: Optional[str] = None


def infer_kind(path: Union[str, Path]) -> MediaKind:
    """Media kind from the file's mimetype.

    Raises:
        ValueError: The file is neither an image nor a video.
    """
    mimetype, _ = mimetypes.guess_type(str(path))
    if mimetype:
        if mimetype.startswith("image/"):
            return MediaKind.IMAGE
        if mimetype.startswith("video/"):
            return MediaKind.VIDEO
    raise ValueError(f"Cannot tell whether {Path(path).name} is an image or a video ({mimetype})")


class UploadCoordinator:
    """Drives uploads against a ChunkUploadClient.

    ``sleep`` and ``on_progress`` are injectable so the backoff schedule
    and the reported states can be observed without waiting.
    """

    def __init__(
        self,
        client: Optional[ChunkUploadClient] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        wake_lock: Optional[WakeLockManager] = None,
        chunk_size: Optional[int] = None,
        chunk_threshold: Optional[int] = None,
        max_retries: Optional[int] = None,
        initial_retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
    ):
        self.client = client or ChunkUploadClient()
        self.monitor = monitor
        self.wake_lock = wake_lock or WakeLockManager()
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_threshold = chunk_threshold or settings.chunk_threshold
        self.max_retries = max_retries or settings.upload_max_retries
        self.initial_retry_delay = (
            initial_retry_delay
            if initial_retry_delay is not None
            else settings.upload_initial_retry_delay
        )
        self._sleep = sleep
        self._on_progress = on_progress

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th consecutive failure (1-based)."""
        return self.initial_retry_delay * (2 ** (attempt - 1))

    def _report(self, progress: UploadProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def is_chunked(self, size: int) -> bool:
        return size >= self.chunk_threshold

    def upload_files(
        self, paths: Iterable[Union[str, Path]], kind: Optional[MediaKind] = None
    ) -> List[UploadOutcome]:
        """Upload files one after another; a failed file does not stop the batch.

        The wake lock is held across the whole batch when any file needs
        the chunked path.
        """
        paths = [Path(p) for p in paths]
        needs_lock = any(p.exists() and self.is_chunked(p.stat().st_size) for p in paths)
        outcomes: List[UploadOutcome] = []

        if needs_lock:
            self.wake_lock.acquire()
        try:
            for path in paths:
                try:
                    response = self.upload_file(path, kind)
                    outcomes.append(UploadOutcome(path=path, success=True, response=response))
                except (ChunkUploadError, OSError, ValueError) as e:
                    logger.error(f"Upload of {path.name} failed: {e}")
                    self._report(
                        UploadProgress(
                            filename=path.name, state=UploadState.FAILED, progress=0.0, error=str(e)
                        )
                    )
                    outcomes.append(UploadOutcome(path=path, success=False, error=str(e)))
        finally:
            if needs_lock:
                self.wake_lock.release()
        return outcomes

    def upload_file(
        self, path: Union[str, Path], kind: Optional[MediaKind] = None
    ) -> dict[str, Any]:
        """Upload one file and return the server's final response.

        Raises:
            ChunkUploadError: A chunk failed ``max_retries`` times in a row,
                the single request of a small file failed, or the server
                did not report the upload as complete.
            OSError: The local file could not be read.
            ValueError: The media kind could not be inferred.
        """
        path = Path(path)
        kind = MediaKind(kind) if kind is not None else infer_kind(path)
        stat = path.stat()
        modified_ms = int(stat.st_mtime * 1000)
        session_id = compute_session_id(path.name, stat.st_size, modified_ms)

        if not self.is_chunked(stat.st_size):
            return self._upload_simple(path, kind, session_id, modified_ms)

        self.wake_lock.acquire()
        try:
            return self._upload_chunked(path, kind, session_id, stat.st_size, modified_ms)
        finally:
            self.wake_lock.release()

    def _upload_simple(
        self, path: Path, kind: MediaKind, session_id: str, modified_ms: int
    ) -> dict[str, Any]:
        """Small files go up as a single chunk in one attempt."""
        data = path.read_bytes()
        self._report(UploadProgress(path.name, UploadState.UPLOADING, 0.0, 0, 1))
        try:
            response = self.client.send_chunk(
                session_id, 0, 1, path.name, kind, data, client_modified_ms=modified_ms
            )
        except requests.RequestException as e:
            raise ChunkUploadError(0, 1, e) from e

        self._require_complete(response, 1)
        self._report(UploadProgress(path.name, UploadState.COMPLETED, 1.0, 0, 1))
        logger.info(f"Uploaded {path.name} ({len(data)} bytes)")
        return response

    def _upload_chunked(
        self, path: Path, kind: MediaKind, session_id: str, size: int, modified_ms: int
    ) -> dict[str, Any]:
        total = count_chunks(size, self.chunk_size)
        present = set(self.client.get_uploaded_indices(session_id))
        if present >= set(range(total)):
            # Assembly never finished; re-sending the last chunk triggers it again
            logger.info(f"Every chunk of {path.name} is on the server, re-sending the last one")
            present.discard(total - 1)
        elif present:
            logger.info(f"Resuming {path.name}: server already has {len(present)}/{total} chunks")

        response: dict[str, Any] = {}
        with open(path, "rb") as f:
            for index in range(total):
                if index in present:
                    self._report(
                        UploadProgress(path.name, UploadState.UPLOADING, (index + 1) / total, index, total)
                    )
                    continue

                f.seek(index * self.chunk_size)
                data = f.read(self.chunk_size)
                response = self._send_with_retry(
                    path.name, session_id, index, total, kind, data, modified_ms
                )
                self._report(
                    UploadProgress(path.name, UploadState.UPLOADING, (index + 1) / total, index, total)
                )

        self._require_complete(response, total)
        self._report(UploadProgress(path.name, UploadState.COMPLETED, 1.0, total - 1, total))
        logger.info(f"Uploaded {path.name} in {total} chunks")
        return response

    @staticmethod
    def _require_complete(response: dict[str, Any], total: int) -> None:
        """The last chunk's response must report a finished, recorded asset."""
        if response.get("complete") is not True:
            received = response.get("chunksReceived")
            raise ChunkUploadError(
                total - 1,
                1,
                RuntimeError(f"server did not complete the upload ({received}/{total} chunks on record)"),
            )

    def _send_with_retry(
        self,
        filename: str,
        session_id: str,
        index: int,
        total: int,
        kind: MediaKind,
        data: bytes,
        modified_ms: int,
    ) -> dict[str, Any]:
        attempt = 0
        while True:
            self.wake_lock.ensure_held()

            if self.monitor is not None and not self.monitor.is_online():
                self._report(
                    UploadProgress(filename, UploadState.WAITING, index / total, index, total, attempt)
                )
                self.monitor.wait_until_online()

            try:
                return self.client.send_chunk(
                    session_id, index, total, filename, kind, data, client_modified_ms=modified_ms
                )
            except requests.RequestException as e:
                attempt += 1
                if attempt >= self.max_retries:
                    raise ChunkUploadError(index, attempt, e) from e

                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Chunk {index}/{total} of {filename} failed (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay:.0f}s: {e}"
                )
                self._report(
                    UploadProgress(
                        filename, UploadState.RETRYING, index / total, index, total, attempt, str(e)
                    )
                )
                self._sleep(delay)

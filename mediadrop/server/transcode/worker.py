"""Video transcoding: claim pending rows, encode them and publish status changes."""

import logging
import queue
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from mediadrop.server.database import SQLStore
from mediadrop.server.events import EventBus
from mediadrop.server.media.ffmpeg import VideoTranscoder
from mediadrop.server.media.pipeline import relative_media_path
from mediadrop.shared.config import settings
from mediadrop.shared.models import MediaAsset, StatusChangeEvent, TranscodeResult, TranscodingStatus

logger = logging.getLogger(__name__)

CLAIM_BATCH_SIZE = 10


class TranscodeWorker:
    """Processes pending videos one at a time.

    Safe to call from several threads: a row is only worked on by the
    caller whose conditional PENDING -> PROCESSING update succeeded.
    """

    def __init__(
        self,
        store: SQLStore,
        bus: EventBus,
        transcoder: Optional[VideoTranscoder] = None,
        media_root: Optional[Path] = None,
    ):
        self.store = store
        self.bus = bus
        self.transcoder = transcoder or VideoTranscoder()
        self.media_root = Path(media_root) if media_root is not None else settings.media_path

    def _publish(self, asset_id: int, status: TranscodingStatus) -> None:
        self.bus.publish(StatusChangeEvent(asset_id=asset_id, status=status))

    def _claim_next(self, conn: Optional[sqlite3.Connection]) -> Optional[MediaAsset]:
        """Claim the oldest pending video, skipping rows another worker won."""
        lost = set()
        while True:
            candidates = [
                video for video in self.store.get_pending_videos(conn, limit=CLAIM_BATCH_SIZE)
                if video.id not in lost
            ]
            if not candidates:
                return None
            for video in candidates:
                if self.store.claim_pending_video(conn, video.id):
                    return video
                logger.debug(f"Video {video.id} was claimed by another worker")
                lost.add(video.id)

    def process_next(self, conn: Optional[sqlite3.Connection] = None) -> TranscodeResult:
        """Transcode the oldest pending video, if any.

        Failures are recorded on the row and published; they are never
        raised to the caller.
        """
        video = self._claim_next(conn)
        if video is None:
            return TranscodeResult(success=True, message="No pending videos")

        asset_id = video.id
        self._publish(asset_id, TranscodingStatus.PROCESSING)
        logger.info(f"Transcoding video {asset_id}: {video.original_path}")

        output = None
        try:
            output = self.transcoder.transcode(self.media_root / video.original_path)
            updated = self.store.mark_video_completed(
                conn,
                asset_id,
                display_path=relative_media_path(output.web_video_path, self.media_root),
                thumb_path=relative_media_path(output.poster_path, self.media_root),
            )
            if not updated:
                raise RuntimeError(f"Video {asset_id} is no longer in processing state")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Transcoding video {asset_id} failed: {message}")
            if output is not None:
                output.web_video_path.unlink(missing_ok=True)
                output.poster_path.unlink(missing_ok=True)
            self.store.mark_video_failed(conn, asset_id, message)
            self._publish(asset_id, TranscodingStatus.FAILED)
            return TranscodeResult(success=False, message=message, asset_id=asset_id)

        self._publish(asset_id, TranscodingStatus.COMPLETED)
        logger.info(f"Video {asset_id} transcoded -> {output.web_video_path.name}")
        return TranscodeResult(
            success=True, message=f"Transcoded video {asset_id}", asset_id=asset_id
        )

    def process_all(self, conn: Optional[sqlite3.Connection] = None) -> int:
        """Drain the pending backlog; returns how many videos were attempted."""
        processed = 0
        while True:
            result = self.process_next(conn)
            if result.asset_id is None:
                return processed
            processed += 1


class TranscodeQueue:
    """Bounded wake-up queue between uploads and the transcode consumer.

    Entries are asset ids, but the consumer always works from the
    database, so a dropped entry only delays a video until the next drain.
    """

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: "queue.Queue[Optional[int]]" = queue.Queue(
            maxsize=maxsize or settings.transcode_queue_size
        )

    def enqueue(self, asset_id: int) -> bool:
        try:
            self._queue.put_nowait(asset_id)
            return True
        except queue.Full:
            logger.warning(f"Transcode queue full; video {asset_id} will wait for the next drain")
            return False

    def wait(self, timeout: Optional[float]) -> Optional[int]:
        """Block until an entry arrives or ``timeout`` passes; returns the entry or None."""
        try:
            entry = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        # Collapse the backlog: one drain serves every queued wake-up
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return entry

    def wake(self) -> None:
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    @property
    def depth(self) -> int:
        return self._queue.qsize()


class TranscodeQueueWorker(threading.Thread):
    """Single consumer thread for the transcode queue.

    - Thread-isolated SQLite connection
    - Daemon thread with stop event
    - Interrupted rows moved to FAILED on startup
    - Drains on every wake-up and on an idle poll interval
    """

    def __init__(
        self,
        worker: TranscodeWorker,
        transcode_queue: TranscodeQueue,
        poll_interval: Optional[float] = None,
    ):
        super().__init__(daemon=True, name="TranscodeQueueWorker")
        self.worker = worker
        self.transcode_queue = transcode_queue
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.transcode_poll_interval
        )
        self._stop_event = threading.Event()
        logger.info("TranscodeQueueWorker initialized")

    def stop(self):
        """Signal the worker to stop."""
        logger.info("TranscodeQueueWorker stop signal received")
        self._stop_event.set()
        self.transcode_queue.wake()

    def _drain(self, conn: sqlite3.Connection) -> None:
        while not self._stop_event.is_set():
            result = self.worker.process_next(conn)
            if result.asset_id is None:
                return

    def run(self):
        logger.info("TranscodeQueueWorker started")
        conn = self.worker.store.connect()
        try:
            count = self.worker.store.fail_interrupted_videos(conn)
            if count > 0:
                logger.warning(f"Marked {count} interrupted videos as failed")

            while not self._stop_event.is_set():
                try:
                    self._drain(conn)
                except Exception as e:
                    logger.exception(f"Error in transcode worker loop: {e}")
                    self._stop_event.wait(1.0)
                    continue

                self.transcode_queue.wait(self.poll_interval)
        finally:
            conn.close()
            logger.info("TranscodeQueueWorker stopped and connection closed")

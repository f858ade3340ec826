"""Turns an assembled upload into a media row and its renditions."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from mediadrop.server.chunks.assembly import AssembledFile
from mediadrop.server.database import SQLStore
from mediadrop.server.media.ffmpeg import VideoTranscoder
from mediadrop.server.media.images import ImageProcessor, extract_capture_date
from mediadrop.shared.config import settings
from mediadrop.shared.contract import parse_client_modified
from mediadrop.shared.errors import MediaProcessingError
from mediadrop.shared.models import MediaKind, TranscodingStatus

if TYPE_CHECKING:
    from mediadrop.server.transcode.worker import TranscodeQueue

logger = logging.getLogger(__name__)


@dataclass
class IngestedMedia:
    """Row created for an assembled upload."""
    asset_id: int
    kind: MediaKind
    status: TranscodingStatus


def relative_media_path(path: Path, media_root: Path) -> str:
    """Store paths relative to the media root so the tree can be moved."""
    return Path(path).resolve().relative_to(Path(media_root).resolve()).as_posix()


class MediaPipeline:
    """Synchronous post-assembly processing.

    Images are fully rendered in the calling request. Videos only get a
    PENDING row; the heavy work is handed to the transcode queue.
    """

    def __init__(
        self,
        store: SQLStore,
        image_processor: Optional[ImageProcessor] = None,
        transcoder: Optional[VideoTranscoder] = None,
        transcode_queue: Optional["TranscodeQueue"] = None,
        media_root: Optional[Path] = None,
    ):
        self.store = store
        self.image_processor = image_processor or ImageProcessor()
        self.transcoder = transcoder or VideoTranscoder()
        self.transcode_queue = transcode_queue
        self.media_root = Path(media_root) if media_root is not None else settings.media_path

    def process(
        self,
        assembled: AssembledFile,
        kind: MediaKind,
        original_filename: Optional[str] = None,
        client_modified: Optional[str] = None,
    ) -> IngestedMedia:
        kind = MediaKind(kind)
        if kind == MediaKind.IMAGE:
            return self._process_image(assembled, original_filename, client_modified)
        return self._process_video(assembled, original_filename, client_modified)

    def _process_image(
        self,
        assembled: AssembledFile,
        original_filename: Optional[str],
        client_modified: Optional[str],
    ) -> IngestedMedia:
        capture_date = extract_capture_date(assembled.path) or parse_client_modified(client_modified)
        try:
            renditions = self.image_processor.process(assembled.path)

            asset_id = self.store.insert_completed_image(
                original_path=relative_media_path(assembled.path, self.media_root),
                display_path=relative_media_path(renditions.display_path, self.media_root),
                thumb_path=relative_media_path(renditions.thumb_path, self.media_root),
                capture_date=capture_date,
                original_filename=original_filename,
            )
            if asset_id is None:
                renditions.thumb_path.unlink(missing_ok=True)
                if not renditions.display_is_original:
                    renditions.display_path.unlink(missing_ok=True)
                raise MediaProcessingError(f"Could not record image {assembled.filename}")
        except MediaProcessingError:
            # No row references the original, so it would never be reclaimed
            assembled.path.unlink(missing_ok=True)
            logger.warning(f"Discarded {assembled.path.name} after failed image processing")
            raise

        logger.info(f"Image {asset_id} ingested: {assembled.filename} (captured {capture_date})")
        return IngestedMedia(asset_id=asset_id, kind=MediaKind.IMAGE, status=TranscodingStatus.COMPLETED)

    def _process_video(
        self,
        assembled: AssembledFile,
        original_filename: Optional[str],
        client_modified: Optional[str],
    ) -> IngestedMedia:
        capture_date = (
            self.transcoder.probe_capture_date(assembled.path)
            or parse_client_modified(client_modified)
        )
        asset_id = self.store.insert_pending_video(
            original_path=relative_media_path(assembled.path, self.media_root),
            capture_date=capture_date,
            original_filename=original_filename,
        )
        if asset_id is None:
            raise MediaProcessingError(f"Could not record video {assembled.filename}")

        logger.info(f"Video {asset_id} queued for transcoding: {assembled.filename}")
        if self.transcode_queue is not None:
            self.transcode_queue.enqueue(asset_id)
        return IngestedMedia(asset_id=asset_id, kind=MediaKind.VIDEO, status=TranscodingStatus.PENDING)

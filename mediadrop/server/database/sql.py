import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from mediadrop.shared.config import settings
from mediadrop.shared.models import MediaAsset, MediaKind, TranscodingStatus, normalize_rotation

logger = logging.getLogger(__name__)

_MEDIA_COLUMNS = (
    "id, kind, original_path, original_filename, display_path, thumb_path, "
    "rotation, capture_date, uploaded_at, transcoding_status, error"
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLStore:
    """
    SQL store for media assets.
    Manages the `media` table: one row per uploaded photo or video, plus the
    transcoding status that drives the video work queue.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path is not None else settings.db_path
        self._init_db()

    def _init_db(self):
        """Create the media table and its indexes."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    """CREATE TABLE IF NOT EXISTS media (
                           id INTEGER PRIMARY KEY AUTOINCREMENT,
                           kind TEXT NOT NULL CHECK (kind IN ('image', 'video')),
                           original_path TEXT NOT NULL,
                           original_filename TEXT,
                           display_path TEXT,
                           thumb_path TEXT,
                           rotation INTEGER NOT NULL DEFAULT 0,
                           capture_date TEXT,
                           uploaded_at TEXT NOT NULL,
                           transcoding_status TEXT NOT NULL DEFAULT 'completed',
                           error TEXT
                       )"""
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_media_queue "
                    "ON media (kind, transcoding_status, uploaded_at)"
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize media database: {e}")
            raise

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection that commits on success and always closes."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        """Reuse a caller-owned connection or open a short-lived one."""
        if conn is None:
            with self._connect() as local_conn:
                yield local_conn
        else:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def connect(self) -> sqlite3.Connection:
        """Open a long-lived connection for a worker thread (caller closes it)."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_asset(row: sqlite3.Row) -> MediaAsset:
        return MediaAsset(**dict(row))

    # =========================================================================
    # Inserts
    # =========================================================================

    def insert_media(
        self,
        kind: MediaKind,
        original_path: str,
        status: TranscodingStatus,
        original_filename: Optional[str] = None,
        display_path: Optional[str] = None,
        thumb_path: Optional[str] = None,
        capture_date: Optional[str] = None,
        uploaded_at: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a new media row and return its id (None on database error)."""
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """INSERT INTO media (
                           kind, original_path, original_filename, display_path,
                           thumb_path, rotation, capture_date, uploaded_at, transcoding_status
                       ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)""",
                    (
                        MediaKind(kind).value,
                        original_path,
                        original_filename,
                        display_path,
                        thumb_path,
                        capture_date,
                        uploaded_at or utc_now_iso(),
                        TranscodingStatus(status).value,
                    ),
                )
                return cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Failed to insert {kind} media row for {original_path}: {e}")
            return None

    def insert_completed_image(
        self,
        original_path: str,
        display_path: str,
        thumb_path: str,
        capture_date: Optional[str] = None,
        original_filename: Optional[str] = None,
    ) -> Optional[int]:
        return self.insert_media(
            MediaKind.IMAGE,
            original_path,
            TranscodingStatus.COMPLETED,
            original_filename=original_filename,
            display_path=display_path,
            thumb_path=thumb_path,
            capture_date=capture_date,
        )

    def insert_pending_video(
        self,
        original_path: str,
        capture_date: Optional[str] = None,
        original_filename: Optional[str] = None,
    ) -> Optional[int]:
        return self.insert_media(
            MediaKind.VIDEO,
            original_path,
            TranscodingStatus.PENDING,
            original_filename=original_filename,
            capture_date=capture_date,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_media_by_id(self, media_id: int) -> Optional[MediaAsset]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_MEDIA_COLUMNS} FROM media WHERE id=?", (media_id,)
                ).fetchone()
                return self._row_to_asset(row) if row else None
        except sqlite3.Error as e:
            logger.error(f"Failed to get media {media_id}: {e}")
            return None

    def get_pending_videos(
        self, conn: Optional[sqlite3.Connection] = None, limit: int = 1
    ) -> List[MediaAsset]:
        """Oldest pending videos first (FIFO by upload time)."""
        try:
            with self._use(conn) as c:
                rows = c.execute(
                    f"""SELECT {_MEDIA_COLUMNS} FROM media
                        WHERE kind='video' AND transcoding_status='pending'
                        ORDER BY uploaded_at ASC, id ASC
                        LIMIT ?""",
                    (limit,),
                ).fetchall()
                return [self._row_to_asset(row) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Failed to get pending videos: {e}")
            return []

    def get_status_counts(self) -> dict[str, int]:
        """Media row counts grouped by transcoding status."""
        counts = {status.value: 0 for status in TranscodingStatus}
        try:
            with self._connect() as conn:
                for status, count in conn.execute(
                    "SELECT transcoding_status, COUNT(*) FROM media GROUP BY transcoding_status"
                ):
                    counts[str(status)] = int(count)
        except sqlite3.Error as e:
            logger.error(f"Failed to get media status counts: {e}")
        return counts

    # =========================================================================
    # Transcoding state machine (every update is gated on the current status)
    # =========================================================================

    def claim_pending_video(self, conn: Optional[sqlite3.Connection], media_id: int) -> bool:
        """Atomically move a video from PENDING to PROCESSING.

        Returns False when another worker already claimed the row.
        """
        try:
            with self._use(conn) as c:
                cursor = c.execute(
                    "UPDATE media SET transcoding_status='processing' "
                    "WHERE id=? AND kind='video' AND transcoding_status='pending'",
                    (media_id,),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to claim video {media_id}: {e}")
            return False

    def mark_video_completed(
        self,
        conn: Optional[sqlite3.Connection],
        media_id: int,
        display_path: str,
        thumb_path: str,
    ) -> bool:
        try:
            with self._use(conn) as c:
                cursor = c.execute(
                    "UPDATE media SET display_path=?, thumb_path=?, error=NULL, "
                    "transcoding_status='completed' "
                    "WHERE id=? AND transcoding_status='processing'",
                    (display_path, thumb_path, media_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to mark video {media_id} as completed: {e}")
            return False

    def mark_video_failed(
        self, conn: Optional[sqlite3.Connection], media_id: int, error: Optional[str] = None
    ) -> bool:
        try:
            with self._use(conn) as c:
                cursor = c.execute(
                    "UPDATE media SET transcoding_status='failed', error=? "
                    "WHERE id=? AND transcoding_status='processing'",
                    (error, media_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to mark video {media_id} as failed: {e}")
            return False

    def fail_interrupted_videos(self, conn: Optional[sqlite3.Connection] = None) -> int:
        """Move videos left PROCESSING by a previous run forward to FAILED."""
        count = 0
        try:
            with self._use(conn) as c:
                cursor = c.execute(
                    "UPDATE media SET transcoding_status='failed', "
                    "error='Interrupted by server restart' "
                    "WHERE kind='video' AND transcoding_status='processing'"
                )
                count = cursor.rowcount
            if count > 0:
                logger.info(f"Marked {count} interrupted videos from PROCESSING to FAILED")
        except sqlite3.Error as e:
            logger.error(f"Failed to recover interrupted videos: {e}")
        return count

    # =========================================================================
    # User edits
    # =========================================================================

    def rotate_media(self, media_id: int, delta: int) -> Optional[int]:
        """Add ``delta`` degrees to a media rotation; returns the new value or None if unknown."""
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE media SET rotation = ((rotation + ?) % 360 + 360) % 360 WHERE id=?",
                    (int(delta), media_id),
                )
                row = conn.execute("SELECT rotation FROM media WHERE id=?", (media_id,)).fetchone()
                return normalize_rotation(row["rotation"]) if row else None
        except sqlite3.Error as e:
            logger.error(f"Failed to rotate media {media_id}: {e}")
            return None

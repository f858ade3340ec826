"""ffmpeg/ffprobe wrappers for video metadata, web encodes and poster frames."""

import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from mediadrop.shared.config import settings
from mediadrop.shared.errors import TranscodeError

logger = logging.getLogger(__name__)

# Checked in order on the container format, then on each stream
CAPTURE_DATE_TAGS = ("creation_time", "com.apple.quicktime.creationdate", "date")
POSTER_OFFSET_SECONDS = 1


@dataclass
class TranscodeOutput:
    """Absolute paths of the files written for one video."""
    web_video_path: Path
    poster_path: Path


def _normalize_tag_date(value: str) -> Optional[str]:
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


class VideoTranscoder:
    """Runs ffmpeg to produce the browser-playable renditions of a video.

    Every ffmpeg/ffprobe failure surfaces as TranscodeError carrying the
    tail of stderr.
    """

    def __init__(
        self,
        web_videos_dir: Optional[Path] = None,
        thumbnails_dir: Optional[Path] = None,
        ffmpeg_binary: Optional[str] = None,
        ffprobe_binary: Optional[str] = None,
        timeout: Optional[int] = None,
        crf: Optional[int] = None,
        preset: Optional[str] = None,
        poster_width: Optional[int] = None,
    ):
        self.web_videos_dir = (
            Path(web_videos_dir) if web_videos_dir is not None else settings.web_videos_path
        )
        self.thumbnails_dir = (
            Path(thumbnails_dir) if thumbnails_dir is not None else settings.thumbnails_path
        )
        self.ffmpeg_binary = ffmpeg_binary or settings.ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary or settings.ffprobe_binary
        self.timeout = timeout if timeout is not None else settings.ffmpeg_timeout
        self.crf = crf if crf is not None else settings.video_crf
        self.preset = preset or settings.video_preset
        self.poster_width = poster_width or settings.thumbnail_width

    def _run(self, cmd: List[str], what: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, check=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace")[-500:] if e.stderr else ""
            raise TranscodeError(f"{what} failed (exit {e.returncode}): {stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise TranscodeError(f"{what} timed out after {self.timeout}s") from e
        except OSError as e:
            raise TranscodeError(f"{what} could not be started: {e}") from e

    def probe_capture_date(self, video_path: Path) -> Optional[str]:
        """Capture date from container/stream tags, or None.

        Probe failures are logged and treated as "no metadata"; they never
        block ingestion.
        """
        cmd = [
            self.ffprobe_binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(video_path),
        ]
        try:
            result = self._run(cmd, "ffprobe")
            info = json.loads(result.stdout or b"{}")
        except (TranscodeError, ValueError) as e:
            logger.warning(f"Could not probe {Path(video_path).name}: {e}")
            return None

        tag_sets = [info.get("format", {}).get("tags", {})]
        tag_sets.extend(stream.get("tags", {}) for stream in info.get("streams", []))
        for tag in CAPTURE_DATE_TAGS:
            for tags in tag_sets:
                value = tags.get(tag)
                if isinstance(value, str):
                    parsed = _normalize_tag_date(value)
                    if parsed:
                        return parsed
        return None

    def transcode_to_web(self, video_path: Path) -> Path:
        """Encode ``video_path`` to H.264/AAC MP4 with faststart under web-videos/."""
        video_path = Path(video_path)
        self.web_videos_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.web_videos_dir / f"{video_path.stem}.mp4"
        cmd = [
            self.ffmpeg_binary, "-nostdin",
            "-i", str(video_path),
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-c:a", "aac",
            "-movflags", "+faststart",
            "-y",
            str(output_path),
        ]
        try:
            self._run(cmd, "ffmpeg encode")
        except TranscodeError:
            output_path.unlink(missing_ok=True)
            raise
        if not output_path.exists():
            raise TranscodeError(f"ffmpeg produced no output for {video_path.name}")
        return output_path

    def extract_poster_frame(self, video_path: Path) -> Path:
        """Grab a frame at 1s (first frame for shorter clips) scaled to the thumbnail width."""
        video_path = Path(video_path)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        poster_path = self.thumbnails_dir / f"{video_path.stem}-thumb.jpg"

        for offset in (POSTER_OFFSET_SECONDS, 0):
            cmd = [
                self.ffmpeg_binary, "-nostdin",
                "-ss", str(offset),
                "-i", str(video_path),
                "-frames:v", "1",
                "-vf", f"scale={self.poster_width}:-2",
                "-q:v", "2",
                "-y",
                str(poster_path),
            ]
            self._run(cmd, "ffmpeg poster")
            # Seeking past the end exits 0 without writing a frame
            if poster_path.exists() and poster_path.stat().st_size > 0:
                return poster_path
            logger.debug(f"No frame at {offset}s in {video_path.name}, retrying earlier")

        raise TranscodeError(f"Could not extract a poster frame from {video_path.name}")

    def transcode(self, video_path: Path) -> TranscodeOutput:
        """Produce the web video and poster frame; removes partial output on failure."""
        web_video_path = self.transcode_to_web(video_path)
        try:
            poster_path = self.extract_poster_frame(web_video_path)
        except TranscodeError:
            web_video_path.unlink(missing_ok=True)
            raise
        return TranscodeOutput(web_video_path=web_video_path, poster_path=poster_path)

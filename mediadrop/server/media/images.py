"""Image renditions: capture date, display copy and thumbnail."""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from mediadrop.shared.config import settings
from mediadrop.shared.errors import MediaProcessingError

logger = logging.getLogger(__name__)

# Lets Pillow open and save HEIC/HEIF files
register_heif_opener()

# Browsers render these directly, so the original doubles as the display copy
WEB_DISPLAYABLE_EXTENSIONS = {".jpg", ".jpeg", ".png"}

EXIF_IFD_POINTER = 0x8769
TAG_DATETIME = 0x0132
TAG_DATETIME_ORIGINAL = 0x9003
TAG_DATETIME_DIGITIZED = 0x9004
EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass
class ImageRenditions:
    """Paths (absolute) of the files produced for one image."""
    display_path: Path
    thumb_path: Path
    display_is_original: bool


def _parse_exif_datetime(value) -> Optional[str]:
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    if not isinstance(value, str):
        return None
    value = value.strip("\x00 ").strip()
    if not value:
        return None
    try:
        return datetime.strptime(value[:19], EXIF_DATETIME_FORMAT).isoformat()
    except ValueError:
        return None


def extract_capture_date(image_path: Path) -> Optional[str]:
    """Read the capture timestamp embedded in an image's EXIF block.

    Prefers DateTimeOriginal, then DateTimeDigitized, then the IFD0
    DateTime. Returns None when there is no usable metadata.
    """
    try:
        with Image.open(image_path) as img:
            exif = img.getexif()
            if not exif:
                return None
            exif_ifd = exif.get_ifd(EXIF_IFD_POINTER)
            candidates = [
                exif_ifd.get(TAG_DATETIME_ORIGINAL),
                exif_ifd.get(TAG_DATETIME_DIGITIZED),
                exif.get(TAG_DATETIME),
            ]
    except (OSError, UnidentifiedImageError, ValueError) as e:
        logger.debug(f"No EXIF capture date for {image_path}: {e}")
        return None

    for candidate in candidates:
        parsed = _parse_exif_datetime(candidate)
        if parsed:
            return parsed
    return None


class ImageProcessor:
    """Generates the display rendition and thumbnail for an uploaded image."""

    def __init__(
        self,
        display_dir: Optional[Path] = None,
        thumbnails_dir: Optional[Path] = None,
        thumbnail_width: Optional[int] = None,
        thumbnail_quality: Optional[int] = None,
        display_quality: Optional[int] = None,
    ):
        self.display_dir = Path(display_dir) if display_dir is not None else settings.display_path
        self.thumbnails_dir = (
            Path(thumbnails_dir) if thumbnails_dir is not None else settings.thumbnails_path
        )
        self.thumbnail_width = thumbnail_width or settings.thumbnail_width
        self.thumbnail_quality = thumbnail_quality or settings.thumbnail_quality
        self.display_quality = display_quality or settings.display_jpeg_quality

    def process(self, original_path: Path) -> ImageRenditions:
        """Render the display copy (if needed) and the thumbnail.

        Raises:
            MediaProcessingError: The file is not a readable image or a
                rendition could not be written. Renditions written before
                the failure are removed.
        """
        original_path = Path(original_path)
        stem = original_path.stem
        written: List[Path] = []

        try:
            with Image.open(original_path) as img:
                img.load()
                upright = ImageOps.exif_transpose(img)

                if original_path.suffix.lower() in WEB_DISPLAYABLE_EXTENSIONS:
                    display_path = original_path
                    display_is_original = True
                else:
                    self.display_dir.mkdir(parents=True, exist_ok=True)
                    display_path = self.display_dir / f"{stem}.jpg"
                    upright.convert("RGB").save(
                        display_path, format="JPEG", quality=self.display_quality
                    )
                    written.append(display_path)
                    display_is_original = False

                thumb_path = self._render_thumbnail(upright, stem)
                written.append(thumb_path)
        except (OSError, UnidentifiedImageError, ValueError) as e:
            for path in written:
                path.unlink(missing_ok=True)
            raise MediaProcessingError(f"Could not process image {original_path.name}: {e}") from e

        logger.debug(f"Rendered image {original_path.name}: display={display_path.name} thumb={thumb_path.name}")
        return ImageRenditions(
            display_path=display_path,
            thumb_path=thumb_path,
            display_is_original=display_is_original,
        )

    def _render_thumbnail(self, image: Image.Image, stem: str) -> Path:
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        thumb_path = self.thumbnails_dir / f"{stem}-thumb.webp"

        thumb = image.convert("RGBA") if image.mode in ("RGBA", "LA", "P") else image.convert("RGB")
        if thumb.width > self.thumbnail_width:
            height = max(1, round(thumb.height * self.thumbnail_width / thumb.width))
            thumb = thumb.resize((self.thumbnail_width, height), Image.Resampling.LANCZOS)
        thumb.save(thumb_path, format="WEBP", quality=self.thumbnail_quality)
        return thumb_path

from mediadrop.server.media.ffmpeg import TranscodeOutput, VideoTranscoder
from mediadrop.server.media.images import ImageProcessor, ImageRenditions, extract_capture_date
from mediadrop.server.media.pipeline import IngestedMedia, MediaPipeline

__all__ = [
    "ImageProcessor",
    "ImageRenditions",
    "IngestedMedia",
    "MediaPipeline",
    "TranscodeOutput",
    "VideoTranscoder",
    "extract_capture_date",
]

"""Exception types shared by the mediadrop server and client."""


class MediaDropError(Exception):
    """Base class for mediadrop errors."""


class InvalidSessionError(MediaDropError, ValueError):
    """Session id is unsafe or malformed."""


class AssemblyError(MediaDropError):
    """Chunks could not be concatenated into the final asset file.

    The session directory is left untouched so the same upload can be
    retried, or reclaimed by the sweeper.
    """

    def __init__(self, session_id: str, message: str):
        super().__init__(f"Assembly of session {session_id} failed: {message}")
        self.session_id = session_id


class MediaProcessingError(MediaDropError):
    """Image renditions could not be generated."""


class TranscodeError(MediaDropError):
    """ffmpeg/ffprobe failed or produced no output."""


class ChunkUploadError(MediaDropError):
    """A chunk could not be delivered within the retry ceiling."""

    def __init__(self, chunk_index: int, attempts: int, cause: Exception):
        super().__init__(
            f"Failed to upload chunk {chunk_index} after {attempts} attempts: {cause}"
        )
        self.chunk_index = chunk_index
        self.attempts = attempts
        self.cause = cause

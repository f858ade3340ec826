"""HTTP client for the mediadrop chunked upload API.

Handles communication with the mediadrop server:
- Health check
- Chunk status probe (which indices the server already holds)
- Single chunk delivery
"""

import logging
from typing import Any, List, Optional

import requests

from mediadrop.shared.config import settings
from mediadrop.shared.models import MediaKind

logger = logging.getLogger(__name__)


class ChunkUploadClient:
    """HTTP client for the chunk endpoints.

    Attributes:
        api_url: Base URL for the API endpoints.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            api_url: Override the default API URL from settings.
            timeout: Request timeout in seconds. Defaults to settings.upload_timeout.
            session: Optional requests session (connection reuse, testing).
        """
        self.api_url = (api_url or settings.api_url).rstrip("/")
        self.timeout = timeout or settings.upload_timeout
        self.session = session or requests.Session()

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server responds with status "ok", False otherwise.
        """
        try:
            response = self.session.get(f"{self.api_url}/health", timeout=self.timeout)
            if response.status_code == 200:
                return response.json().get("status") == "ok"
            return False
        except (requests.RequestException, ValueError):
            return False

    def get_uploaded_indices(self, session_id: str) -> List[int]:
        """Indices the server already holds for ``session_id``.

        Any failure is logged and reported as "nothing uploaded yet", so
        the upload simply starts from scratch.
        """
        try:
            response = self.session.get(
                f"{self.api_url}/chunk-status",
                params={"sessionId": session_id},
                timeout=self.timeout,
            )
            response.raise_for_status()
            indices = response.json().get("uploadedIndices", [])
            return sorted(int(i) for i in indices)
        except (requests.RequestException, ValueError, TypeError) as e:
            logger.warning(f"Chunk status probe failed for {session_id}, starting fresh: {e}")
            return []

    def send_chunk(
        self,
        session_id: str,
        chunk_index: int,
        total_chunks: int,
        filename: str,
        kind: MediaKind,
        data: bytes,
        client_modified_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """POST one chunk.

        Returns:
            The decoded JSON response.

        Raises:
            requests.RequestException: Network failure or non-2xx response.
        """
        form = {
            "chunkIndex": str(chunk_index),
            "totalChunks": str(total_chunks),
            "filename": filename,
            "sessionId": session_id,
            "kind": MediaKind(kind).value,
        }
        if client_modified_ms is not None:
            form["clientModifiedAt"] = str(int(client_modified_ms))

        response = self.session.post(
            f"{self.api_url}/chunk",
            files={"chunk": (f"chunk-{chunk_index}", data, "application/octet-stream")},
            data=form,
            timeout=self.timeout,
        )
        if not response.ok:
            logger.warning(
                f"Chunk {chunk_index} of {session_id} rejected: {response.status_code} - {response.text[:200]}"
            )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return {}

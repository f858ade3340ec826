"""Connectivity detection for the upload client."""

import logging
import socket
import threading
from typing import Optional
from urllib.parse import urlparse

from mediadrop.shared.config import settings

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


class ConnectivityMonitor:
    """Answers "can we reach the server right now?" with a TCP connect probe."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        probe_interval: Optional[float] = None,
        probe_timeout: float = 3.0,
    ):
        parsed = urlparse(api_url or settings.api_url)
        self.host = parsed.hostname or "localhost"
        self.port = parsed.port or DEFAULT_PORTS.get(parsed.scheme, 80)
        self.probe_interval = (
            probe_interval if probe_interval is not None else settings.connectivity_probe_interval
        )
        self.probe_timeout = probe_timeout
        self._stop_event = threading.Event()

    def is_online(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.probe_timeout):
                return True
        except OSError:
            return False

    def wait_until_online(self) -> bool:
        """Block until a probe succeeds; returns False if stop() was called first."""
        logger.info(f"Offline, waiting for {self.host}:{self.port} to become reachable")
        while not self._stop_event.is_set():
            if self.is_online():
                logger.info("Connection restored")
                return True
            self._stop_event.wait(self.probe_interval)
        return False

    def stop(self):
        self._stop_event.set()

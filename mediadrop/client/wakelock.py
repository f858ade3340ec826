"""Keep the machine awake while chunked uploads are in flight.

Backends:
- Linux: ``systemd-inhibit`` holding an idle/sleep inhibitor
- macOS: ``caffeinate -i``
- Windows: ``SetThreadExecutionState``
- Anything else: a no-op lock

A wake lock is a convenience, never a requirement: every backend
failure is logged and the upload carries on.
"""

import ctypes
import logging
import platform
import shutil
import subprocess
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class WakeLock:
    """Platform wake lock backend."""

    name = "none"

    def acquire(self) -> None:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    @property
    def held(self) -> bool:
        raise NotImplementedError


class NullWakeLock(WakeLock):
    name = "none"

    def __init__(self):
        self._held = False

    def acquire(self) -> None:
        self._held = True

    def release(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held


class ProcessWakeLock(WakeLock):
    """Holds the lock for as long as a helper process is alive.

    If the helper dies (killed, session ended) the lock is considered
    revoked and ``held`` turns False.
    """

    def __init__(self, command: List[str], name: str):
        self.command = command
        self.name = name
        self._process: Optional[subprocess.Popen] = None

    def acquire(self) -> None:
        if self.held:
            return
        self._process = subprocess.Popen(
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        logger.debug(f"Wake lock acquired via {self.name} (PID={self._process.pid})")

    def release(self) -> None:
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} did not stop gracefully, killing")
            process.kill()
            process.wait()
        logger.debug(f"Wake lock released ({self.name})")

    @property
    def held(self) -> bool:
        return self._process is not None and self._process.poll() is None


class WindowsWakeLock(WakeLock):
    name = "SetThreadExecutionState"

    ES_CONTINUOUS = 0x80000000
    ES_SYSTEM_REQUIRED = 0x00000001

    def __init__(self):
        self._held = False

    def _set_state(self, flags: int) -> None:
        if not ctypes.windll.kernel32.SetThreadExecutionState(flags):
            raise OSError("SetThreadExecutionState failed")

    def acquire(self) -> None:
        self._set_state(self.ES_CONTINUOUS | self.ES_SYSTEM_REQUIRED)
        self._held = True

    def release(self) -> None:
        if self._held:
            self._set_state(self.ES_CONTINUOUS)
            self._held = False

    @property
    def held(self) -> bool:
        return self._held


def detect_wake_lock() -> WakeLock:
    """Pick the best wake lock backend for the current platform."""
    system = platform.system()
    if system == "Linux" and shutil.which("systemd-inhibit"):
        return ProcessWakeLock(
            [
                "systemd-inhibit",
                "--what=idle:sleep",
                "--who=mediadrop",
                "--why=Uploading media",
                "--mode=block",
                "sleep", "infinity",
            ],
            name="systemd-inhibit",
        )
    if system == "Darwin" and shutil.which("caffeinate"):
        return ProcessWakeLock(["caffeinate", "-i"], name="caffeinate")
    if system == "Windows":
        return WindowsWakeLock()
    return NullWakeLock()


class WakeLockManager:
    """Reference-counted wake lock shared by concurrent uploads.

    The backend is acquired on the first ``acquire()`` and released when
    the last holder calls ``release()``. ``ensure_held()`` re-acquires a
    lock the OS revoked while uploads are still running.
    """

    def __init__(self, factory: Callable[[], WakeLock] = detect_wake_lock):
        self._factory = factory
        self._backend: Optional[WakeLock] = None
        self._holders = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._holders > 0

    @property
    def held(self) -> bool:
        with self._lock:
            return self._backend is not None and self._backend.held

    def _backend_instance(self) -> WakeLock:
        if self._backend is None:
            self._backend = self._factory()
        return self._backend

    def _try_acquire(self) -> None:
        try:
            self._backend_instance().acquire()
        except Exception as e:
            logger.warning(f"Could not acquire wake lock (uploads continue): {e}")

    def acquire(self) -> None:
        with self._lock:
            self._holders += 1
            if self._holders == 1:
                self._try_acquire()

    def release(self) -> None:
        with self._lock:
            if self._holders == 0:
                return
            self._holders -= 1
            if self._holders == 0 and self._backend is not None:
                try:
                    self._backend.release()
                except Exception as e:
                    logger.warning(f"Could not release wake lock: {e}")

    def ensure_held(self) -> None:
        with self._lock:
            if self._holders == 0:
                return
            if self._backend is not None and self._backend.held:
                return
            logger.info("Wake lock was released by the system, re-acquiring")
            self._try_acquire()

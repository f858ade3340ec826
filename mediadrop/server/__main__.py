"""mediadrop server entry point.

Launch with: python -m mediadrop.server

The server handles:
- Chunked, resumable uploads and their assembly
- Image renditions (display copy + thumbnail)
- Background video transcoding for browser playback
- Live transcoding status over Server-Sent Events
- Periodic cleanup of abandoned upload sessions
"""

import atexit
import signal
import sys

from mediadrop.shared.config import settings
from mediadrop.shared.logging_config import configure_logging

logger = configure_logging("mediadrop.server")

from mediadrop.server.app import create_app, init_sweeper_worker, init_transcode_worker

WORKER_ATTRS = [
    ("transcode worker", "transcode_worker"),
    ("sweeper worker", "sweeper_worker"),
]


def main():
    """Start the mediadrop server."""
    app = create_app(settings)

    logger.info("=" * 50)
    logger.info("mediadrop Server Starting")
    logger.info("=" * 50)
    logger.info(f"Debug mode: {'ON' if settings.debug else 'OFF'}")
    logger.info(f"Data folder: {settings.data_dir}")
    logger.info(f"Media root: {settings.media_path}")
    logger.info(f"Chunk sessions: {settings.chunks_path}")
    logger.info(f"Database: {settings.db_path}")
    logger.info(f"Bind: {settings.host}:{settings.port}")
    logger.info(f"API URL: http://{settings.host}:{settings.port}/api")
    logger.info(f"ffmpeg: {settings.ffmpeg_binary} (crf={settings.video_crf}, preset={settings.video_preset})")
    logger.info("=" * 50)

    if settings.start_workers:
        init_transcode_worker(app)
        init_sweeper_worker(app)
    else:
        logger.info("Background workers disabled")

    _shutting_down = False

    def shutdown_handler(signum, frame):
        nonlocal _shutting_down
        if _shutting_down:
            return
        _shutting_down = True

        logger.info("")
        logger.info("Received shutdown signal, stopping server...")

        try:
            for label, attr in WORKER_ATTRS:
                worker = getattr(app, attr, None)
                if worker:
                    logger.info(f"Stopping {label}...")
                    worker.stop()
                    worker.join(timeout=5)
                    logger.info(f"{label.capitalize()} stopped")
        except Exception as e:
            logger.warning(f"Error stopping workers: {e}")

        logger.info("Server shutdown complete")
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    def _shutdown_workers_on_exit():
        for _, attr in WORKER_ATTRS:
            worker = getattr(app, attr, None)
            if worker:
                try:
                    worker.stop()
                except Exception as e:
                    logger.debug(f"Ignoring error while stopping {attr}: {e}")

    atexit.register(_shutdown_workers_on_exit)

    try:
        app.run(
            host=settings.host,
            port=settings.port,
            debug=settings.debug,
            use_reloader=False,
            threaded=True,
        )
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

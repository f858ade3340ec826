import logging
from dataclasses import dataclass
from typing import Optional

from flask import Flask

from mediadrop.server.api import api_bp
from mediadrop.server.chunks import AssemblyService, ChunkStore, sweep_abandoned_sessions
from mediadrop.server.database import SQLStore
from mediadrop.server.events import EventBus
from mediadrop.server.media import ImageProcessor, MediaPipeline, VideoTranscoder
from mediadrop.server.transcode import TranscodeQueue, TranscodeWorker
from mediadrop.shared.config import Settings, settings as default_settings
from mediadrop.shared.models import SweepResult

logger = logging.getLogger(__name__)


@dataclass
class ServerContext:
    """Process-wide services shared by the API and the background workers."""
    settings: Settings
    store: SQLStore
    chunk_store: ChunkStore
    assembly: AssemblyService
    bus: EventBus
    transcode_queue: TranscodeQueue
    transcode_worker: TranscodeWorker
    pipeline: MediaPipeline

    def sweep(self) -> SweepResult:
        return sweep_abandoned_sessions(
            self.settings.chunks_path, self.settings.chunk_retention_seconds
        )


def build_context(config: Optional[Settings] = None) -> ServerContext:
    """Wire every server service against one settings instance."""
    config = config or default_settings
    config.ensure_directories()

    store = SQLStore(config.db_path)
    chunk_store = ChunkStore(config.chunks_path)
    bus = EventBus()
    transcoder = VideoTranscoder(
        web_videos_dir=config.web_videos_path,
        thumbnails_dir=config.thumbnails_path,
        ffmpeg_binary=config.ffmpeg_binary,
        ffprobe_binary=config.ffprobe_binary,
        timeout=config.ffmpeg_timeout,
        crf=config.video_crf,
        preset=config.video_preset,
        poster_width=config.thumbnail_width,
    )
    transcode_queue = TranscodeQueue(config.transcode_queue_size)
    image_processor = ImageProcessor(
        display_dir=config.display_path,
        thumbnails_dir=config.thumbnails_path,
        thumbnail_width=config.thumbnail_width,
        thumbnail_quality=config.thumbnail_quality,
        display_quality=config.display_jpeg_quality,
    )

    return ServerContext(
        settings=config,
        store=store,
        chunk_store=chunk_store,
        assembly=AssemblyService(chunk_store, config.originals_path),
        bus=bus,
        transcode_queue=transcode_queue,
        transcode_worker=TranscodeWorker(store, bus, transcoder, config.media_path),
        pipeline=MediaPipeline(
            store,
            image_processor=image_processor,
            transcoder=transcoder,
            transcode_queue=transcode_queue,
            media_root=config.media_path,
        ),
    )


def create_app(config: Optional[Settings] = None, context: Optional[ServerContext] = None) -> Flask:
    """Create the Flask app. Background workers are started separately."""
    context = context or build_context(config)

    app = Flask(__name__)
    app.extensions["mediadrop"] = context
    app.register_blueprint(api_bp)
    return app


def init_transcode_worker(app_instance):
    """Start the transcode queue consumer and attach it to the app.

    The consumer fails rows left PROCESSING by a previous run before it
    drains the backlog.
    """
    from mediadrop.server.transcode import TranscodeQueueWorker

    context: ServerContext = app_instance.extensions["mediadrop"]
    transcode_worker = TranscodeQueueWorker(
        context.transcode_worker,
        context.transcode_queue,
        poll_interval=context.settings.transcode_poll_interval,
    )
    transcode_worker.start()

    app_instance.transcode_worker = transcode_worker
    logger.info("Transcode Worker started successfully.")


def init_sweeper_worker(app_instance):
    """Start the abandoned-session sweeper and attach it to the app."""
    from mediadrop.server.chunks import ChunkSweeperWorker

    context: ServerContext = app_instance.extensions["mediadrop"]
    sweeper_worker = ChunkSweeperWorker(
        chunks_root=context.settings.chunks_path,
        max_age_seconds=context.settings.chunk_retention_seconds,
        interval=context.settings.chunk_sweep_interval,
    )
    sweeper_worker.start()

    app_instance.sweeper_worker = sweeper_worker
    logger.info("Chunk Sweeper Worker started successfully.")

from mediadrop.server.transcode.worker import TranscodeQueue, TranscodeQueueWorker, TranscodeWorker

__all__ = ["TranscodeQueue", "TranscodeQueueWorker", "TranscodeWorker"]

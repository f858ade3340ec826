"""mediadrop upload client entry point.

Launch with: python -m mediadrop.client FILE [FILE ...]

The client handles:
- Chunked, resumable uploads (small files go up in one request)
- Waiting out connectivity loss and retrying with backoff
- Holding a wake lock while chunked uploads run
"""

import argparse
import sys
from typing import Optional

from mediadrop.shared.config import settings
from mediadrop.shared.logging_config import configure_logging

logger = configure_logging("mediadrop.client")

from mediadrop.client.coordinator import UploadCoordinator, UploadProgress, UploadState
from mediadrop.client.network import ConnectivityMonitor
from mediadrop.client.uploader import ChunkUploadClient
from mediadrop.shared.models import MediaKind


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mediadrop-upload",
        description="Upload photos and videos to a mediadrop server.",
    )
    parser.add_argument("files", nargs="+", help="Files to upload")
    parser.add_argument(
        "--api-url",
        default=settings.api_url,
        help=f"Server API URL (default: {settings.api_url})",
    )
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in MediaKind],
        default=None,
        help="Force the media kind instead of inferring it from the mimetype",
    )
    return parser.parse_args(argv)


def log_progress(progress: UploadProgress) -> None:
    if progress.state == UploadState.UPLOADING:
        logger.info(f"{progress.filename}: {progress.progress * 100:.0f}%")
    elif progress.state == UploadState.WAITING:
        logger.info(f"{progress.filename}: waiting for network")
    elif progress.state == UploadState.RETRYING:
        logger.info(f"{progress.filename}: retrying chunk {progress.chunk_index} (attempt {progress.attempt})")
    elif progress.state == UploadState.COMPLETED:
        logger.info(f"{progress.filename}: done")


def main(argv: Optional[list[str]] = None) -> int:
    """Upload the given files sequentially; exit code 1 if any failed."""
    args = parse_args(argv)

    logger.info("=" * 50)
    logger.info("mediadrop Upload Client")
    logger.info("=" * 50)
    logger.info(f"Server API: {args.api_url}")
    logger.info(f"Chunk size: {settings.chunk_size} bytes (threshold {settings.chunk_threshold})")
    logger.info(f"Max retries per chunk: {settings.upload_max_retries}")
    logger.info("=" * 50)

    client = ChunkUploadClient(api_url=args.api_url)
    if not client.health_check():
        logger.warning("Server not reachable yet; uploads will wait for it")

    coordinator = UploadCoordinator(
        client=client,
        monitor=ConnectivityMonitor(api_url=args.api_url),
        on_progress=log_progress,
    )
    kind = MediaKind(args.kind) if args.kind else None

    try:
        outcomes = coordinator.upload_files(args.files, kind=kind)
    except KeyboardInterrupt:
        logger.info("Upload interrupted; run again with the same files to resume")
        return 130

    failed = [outcome for outcome in outcomes if not outcome.success]
    logger.info(f"Uploaded {len(outcomes) - len(failed)}/{len(outcomes)} file(s)")
    for outcome in failed:
        logger.error(f"  {outcome.path.name}: {outcome.error}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())

"""REST API Blueprint for the mediadrop server.

Provides HTTP endpoints for the upload client and viewers:
- Health check endpoint
- Chunked upload endpoints (status probe + chunk ingestion)
- Live transcoding status stream (Server-Sent Events)
- Maintenance endpoints (abandoned-session cleanup, manual transcode)
- Media record lookup and rotation
"""

import logging

from flask import Blueprint, Response, current_app, jsonify, request
from pydantic import ValidationError

from mediadrop.server.events import stream_status_events
from mediadrop.shared.contract import (
    ChunkUploadForm,
    generate_diagnostic_id,
    is_valid_session_id,
)
from mediadrop.shared.errors import AssemblyError, InvalidSessionError, MediaProcessingError

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


def _serialize_validation_errors(errors: list) -> list:
    """Convert Pydantic validation errors to JSON-serializable format."""
    result = []
    for err in errors:
        serialized = {
            "type": err.get("type"),
            "loc": err.get("loc"),
            "msg": err.get("msg"),
            "input": str(err.get("input")) if err.get("input") is not None else None,
        }
        if "ctx" in err and isinstance(err["ctx"], dict):
            ctx = err["ctx"]
            if "error" in ctx:
                serialized["ctx"] = {"error": str(ctx["error"])}
        result.append(serialized)
    return result


def _error(code: str, message: str, status: int, diagnostic_id: str, **extra):
    body = {
        "status": "error",
        "code": code,
        "message": message,
        "diagnostic_id": diagnostic_id,
    }
    body.update(extra)
    return jsonify(body), status


def _services():
    return current_app.extensions["mediadrop"]


@api_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.route("/chunk-status", methods=["GET"])
def chunk_status():
    """Which chunk indices of a session the server already holds.

    Query Params:
        sessionId: Client-derived upload session id

    Returns:
        {"uploadedIndices": [...]} sorted ascending; an unknown session
        yields an empty list.
    """
    diagnostic_id = generate_diagnostic_id()
    session_id = request.args.get("sessionId", "")
    if not session_id:
        return _error("MISSING_SESSION_ID", "sessionId is required", 400, diagnostic_id)
    if not is_valid_session_id(session_id):
        return _error("INVALID_SESSION_ID", "sessionId is malformed", 400, diagnostic_id)

    try:
        indices = _services().chunk_store.list_received_indices(session_id)
    except OSError as e:
        logger.error(f"Chunk status failed for {session_id}: {e}, diagnostic_id={diagnostic_id}")
        return _error("CHUNK_STATUS_FAILED", str(e), 500, diagnostic_id)
    return jsonify({"uploadedIndices": indices}), 200


@api_bp.route("/chunk", methods=["POST"])
def upload_chunk():
    """Accept one chunk; the chunk completing the session triggers assembly.

    Accepts multipart/form-data:
    - chunk: Binary chunk payload
    - chunkIndex, totalChunks, filename, sessionId, kind
    - clientModifiedAt: Optional client last-modified (ms since epoch)

    Returns:
        HTTP 200 with progress (incomplete) or the created asset (complete),
        400 on invalid input, 500 on storage/assembly/processing failure
    """
    diagnostic_id = generate_diagnostic_id()

    if "chunk" not in request.files:
        return _error("MISSING_CHUNK", "No chunk part", 400, diagnostic_id)

    try:
        form = ChunkUploadForm.model_validate(request.form.to_dict())
    except ValidationError as e:
        return _error(
            "VALIDATION_ERROR",
            "Chunk metadata validation failed",
            400,
            diagnostic_id,
            details=_serialize_validation_errors(e.errors()),
        )

    services = _services()
    data = request.files["chunk"].read()

    try:
        received = services.chunk_store.accept_chunk(form.session_id, form.chunk_index, data)
    except InvalidSessionError as e:
        return _error("INVALID_SESSION_ID", str(e), 400, diagnostic_id)
    except OSError as e:
        logger.error(
            f"Failed to store chunk {form.chunk_index} of {form.session_id}: {e}, "
            f"diagnostic_id={diagnostic_id}"
        )
        return _error("CHUNK_WRITE_FAILED", str(e), 500, diagnostic_id)

    if not services.assembly.is_complete(received, form.total_chunks):
        return jsonify(
            {
                "success": True,
                "complete": False,
                "chunksReceived": received,
                "totalChunks": form.total_chunks,
            }
        ), 200

    try:
        assembled = services.assembly.assemble(form.session_id, form.filename, form.total_chunks)
        ingested = services.pipeline.process(
            assembled,
            form.kind,
            original_filename=form.filename,
            client_modified=form.client_modified_at,
        )
    except AssemblyError as e:
        return _error("ASSEMBLY_FAILED", str(e), 500, diagnostic_id)
    except MediaProcessingError as e:
        logger.error(f"{e}, diagnostic_id={diagnostic_id}")
        return _error("PROCESSING_FAILED", str(e), 500, diagnostic_id)
    except Exception as e:
        logger.exception(f"Upload completion failed: diagnostic_id={diagnostic_id}")
        return _error("INTERNAL_ERROR", str(e), 500, diagnostic_id)

    return jsonify(
        {
            "success": True,
            "complete": True,
            "assetId": ingested.asset_id,
            "kind": ingested.kind.value,
            "status": ingested.status.value,
        }
    ), 200


@api_bp.route("/status-stream", methods=["GET"])
def status_stream():
    """Server-Sent Events feed of transcoding status changes."""
    services = _services()
    return Response(
        stream_status_events(services.bus, services.settings.event_heartbeat_seconds),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@api_bp.route("/cleanup", methods=["POST"])
def cleanup():
    """Delete abandoned upload sessions now instead of waiting for the sweeper."""
    diagnostic_id = generate_diagnostic_id()
    try:
        result = _services().sweep()
    except Exception as e:
        logger.exception(f"Manual cleanup failed: diagnostic_id={diagnostic_id}")
        return _error("CLEANUP_FAILED", str(e), 500, diagnostic_id)

    return jsonify(
        {
            "success": True,
            "deleted": result.deleted,
            "errors": result.errors,
            "message": f"Cleaned up {result.deleted} abandoned upload session(s)",
        }
    ), 200


@api_bp.route("/transcode/next", methods=["GET", "POST"])
def transcode_next():
    """Transcode the oldest pending video on the request thread."""
    try:
        result = _services().transcode_worker.process_next()
    except Exception as e:
        logger.exception("Manual transcode failed")
        return jsonify({"success": False, "message": str(e), "assetId": None}), 500
    return jsonify(result.to_api()), 200


@api_bp.route("/media/<int:media_id>", methods=["GET"])
def get_media(media_id: int):
    diagnostic_id = generate_diagnostic_id()
    asset = _services().store.get_media_by_id(media_id)
    if asset is None:
        return _error("NOT_FOUND", f"Media {media_id} not found", 404, diagnostic_id)
    return jsonify(asset.to_api()), 200


@api_bp.route("/media/<int:media_id>/rotate", methods=["POST"])
def rotate_media(media_id: int):
    """Add ``delta`` degrees to a media item's display rotation.

    Body: {"delta": int}
    """
    diagnostic_id = generate_diagnostic_id()
    payload = request.get_json(silent=True) or {}
    delta = payload.get("delta")
    if isinstance(delta, bool) or not isinstance(delta, int):
        return _error("INVALID_DELTA", "delta must be an integer", 400, diagnostic_id)

    rotation = _services().store.rotate_media(media_id, delta)
    if rotation is None:
        return _error("NOT_FOUND", f"Media {media_id} not found", 404, diagnostic_id)
    return jsonify({"success": True, "id": media_id, "rotationDegrees": rotation}), 200


@api_bp.route("/queue/status", methods=["GET"])
def queue_status():
    services = _services()
    counts = services.store.get_status_counts()
    return jsonify(
        {
            "counts": counts,
            "queueDepth": services.transcode_queue.depth,
        }
    ), 200

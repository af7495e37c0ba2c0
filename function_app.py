import json
import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import azure.functions as func

from integrations.auth import require_auth
from processing import compress_video
from processing.config import get_settings
from processing.errors import CompressionError, InvalidInput
from processing.models import SourceMedia, VideoOptions
from processing.validation import validate_video
from processing.video import EmbeddedVideoBackend, VideoBackend


logging.getLogger().setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)

START_TIME = time.time()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Expose-Headers": "Content-Disposition, X-Original-Size, X-Compressed-Size",
}

_backend: Optional[VideoBackend] = None


def _get_backend() -> VideoBackend:
    # The service always transcodes with its own embedded engine
    global _backend
    if _backend is None:
        _backend = EmbeddedVideoBackend()
    return _backend


def _json_response(body: Dict[str, Any], status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(
        body=json.dumps(body),
        mimetype="application/json",
        status_code=status_code,
        headers=dict(CORS_HEADERS),
    )


def _preflight() -> func.HttpResponse:
    return func.HttpResponse(
        status_code=200,
        headers={
            **CORS_HEADERS,
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type, X-Api-Key, Authorization",
        },
    )


def _read_video_upload(req: func.HttpRequest) -> Tuple[Optional[SourceMedia], Optional[func.HttpResponse]]:
    """Pull the ``video`` field out of a multipart request and validate it."""
    files = req.files
    if not files or "video" not in files:
        return None, _json_response({"error": "No video file uploaded"}, 400)

    upload = files["video"]
    source = SourceMedia(
        data=upload.stream.read(),
        mime_type=upload.mimetype or "application/octet-stream",
        name=upload.filename or "upload",
    )
    logging.info("Received upload %s (%s, %s bytes)", source.name, source.mime_type, source.size)

    try:
        validate_video(source, get_settings().max_upload_bytes)
    except InvalidInput as exc:
        logging.warning("Rejected upload %s: %s", source.name, exc.message)
        return None, _json_response({"error": exc.message}, exc.status_code)

    return source, None


def handle_health(req: func.HttpRequest) -> func.HttpResponse:
    return _json_response({
        "status": "ok",
        "message": "OptiPix compression service is running",
        "uptime_seconds": int(time.time() - START_TIME),
    })


async def handle_compress_video(
    req: func.HttpRequest, backend: Optional[VideoBackend] = None
) -> func.HttpResponse:
    """Compress an uploaded video and return it as the response body.

    POST /api/compress-video
    Content-Type: multipart/form-data
    Fields: video (file), quality, format, resolution, bitrate
    """
    auth_response = require_auth(req)
    if auth_response:
        return auth_response

    source, error_response = _read_video_upload(req)
    if error_response:
        return error_response

    form = req.form
    options = VideoOptions(
        quality_preset=form.get("quality") or "medium",
        output_format=form.get("format") or "mp4",
        resolution=form.get("resolution") or None,
        custom_bitrate=form.get("bitrate") or None,
    )

    try:
        result = await compress_video(source, options, backend=backend or _get_backend())
    except CompressionError as exc:
        logging.error("Compression failed for %s: %s", source.name, exc.message)
        return _json_response({"error": "Failed to compress video", "details": exc.message}, 500)

    return func.HttpResponse(
        body=result.data,
        mimetype=result.mime_type,
        status_code=200,
        headers={
            **CORS_HEADERS,
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "X-Original-Size": str(source.size),
            "X-Compressed-Size": str(result.size),
        },
    )


async def handle_video_info(
    req: func.HttpRequest, backend: Optional[EmbeddedVideoBackend] = None
) -> func.HttpResponse:
    """Describe an uploaded video (duration, size, bitrate, streams).

    POST /api/video-info
    Content-Type: multipart/form-data
    Fields: video (file)
    """
    auth_response = require_auth(req)
    if auth_response:
        return auth_response

    source, error_response = _read_video_upload(req)
    if error_response:
        return error_response

    backend = backend or _get_backend()
    try:
        info = await backend.probe_details(source)
    except CompressionError as exc:
        logging.error("Probe failed for %s: %s", source.name, exc.message)
        return _json_response({"error": "Failed to get video info", "details": exc.message}, 500)

    return _json_response(info)


@app.route(route="health", methods=["GET"])
def health(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    return handle_health(req)


@app.route(route="api/compress-video", methods=["POST", "OPTIONS"])
async def compress_video_endpoint(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    if req.method == "OPTIONS":
        return _preflight()
    return await handle_compress_video(req)


@app.route(route="api/video-info", methods=["POST", "OPTIONS"])
async def video_info_endpoint(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    if req.method == "OPTIONS":
        return _preflight()
    return await handle_video_info(req)

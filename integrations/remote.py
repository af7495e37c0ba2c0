"""Client for the remote compression service (``function_app.py``)."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import unquote

import requests

from processing.config import get_settings
from processing.errors import EngineInitFailure, MetadataUnavailable, RemoteServiceError, TranscodeFailure
from processing.models import CompressionResult, SourceMedia, VideoCommand, VideoMetadata
from processing.resolver import derive_filename
from processing.video import PROGRESS_DONE, ProgressCallback, ProgressTracker, VideoBackend


FILENAME_PATTERN = re.compile(r"filename(\*)?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def filename_from_content_disposition(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = FILENAME_PATTERN.search(header)
    if not match:
        return None
    extended, filename = match.groups()
    # filename* values are percent-encoded (RFC 5987)
    return (unquote(filename) if extended else filename).strip()


def form_fields(command: VideoCommand) -> Dict[str, str]:
    """Multipart fields for ``/api/compress-video`` from a resolved command."""
    fields = {
        "quality": command.quality_preset,
        "format": command.container,
        "bitrate": command.video_bitrate,
    }
    if command.scale:
        fields["resolution"] = f"{command.scale[0]}x{command.scale[1]}"
    return fields


def _raise_for_status(response: requests.Response) -> None:
    if response.ok:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    details = body.get("details")
    message = body.get("error") or f"HTTP error! status: {response.status_code}"
    if details:
        message = f"{message}: {details}"
    logging.error("Compression service returned %s: %s", response.status_code, message)
    raise RemoteServiceError(message, response.status_code, details)


class RemoteVideoBackend(VideoBackend):
    """Posts the source to the remote compression service.

    Progress has no granularity here: the callback only sees 100 once the
    whole response has arrived.
    """

    name = "remote"
    reports_progress = False

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        api_key: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.remote_timeout
        self.api_key = api_key if api_key is not None else settings.client_api_key
        self.http = http or requests.Session()

    def _post(self, path: str, source: SourceMedia, data: Optional[Dict[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        files = {"video": (source.name, source.data, source.mime_type)}
        try:
            response = self.http.post(url, files=files, data=data or {}, headers=headers, timeout=self.timeout)
        except requests.ConnectionError as exc:
            raise EngineInitFailure(f"Compression service unreachable at {self.base_url}: {exc}") from exc
        except requests.Timeout as exc:
            raise TranscodeFailure(f"Compression service timed out after {self.timeout}s") from exc
        _raise_for_status(response)
        return response

    async def compress(
        self,
        source: SourceMedia,
        command: VideoCommand,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompressionResult:
        tracker = ProgressTracker(on_progress)
        logging.info("Posting %s (%s bytes) to %s", source.name, source.size, self.base_url)

        response = await asyncio.to_thread(self._post, "/api/compress-video", source, form_fields(command))
        if not response.content:
            raise TranscodeFailure("Compression service returned an empty body")

        filename = filename_from_content_disposition(
            response.headers.get("Content-Disposition")
        ) or derive_filename(source.name, command.container)

        result = CompressionResult(
            data=response.content,
            mime_type=command.mime_type,
            filename=filename,
            source=source,
        )
        tracker.report(PROGRESS_DONE)
        logging.info("Remote compression of %s: %s -> %s bytes", source.name, source.size, result.size)
        return result

    async def probe(self, source: SourceMedia) -> VideoMetadata:
        info = await self.probe_details(source)
        video = info.get("video")
        if not isinstance(video, dict):
            video = {}
        return VideoMetadata(
            duration=info.get("duration"),
            width=video.get("width"),
            height=video.get("height"),
        )

    async def probe_details(self, source: SourceMedia) -> Dict[str, Any]:
        response = await asyncio.to_thread(self._post, "/api/video-info", source)
        try:
            info = response.json()
        except ValueError:
            info = None
        if not isinstance(info, dict):
            raise MetadataUnavailable("Compression service returned an unreadable video-info body")
        return info

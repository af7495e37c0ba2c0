import logging
from typing import Optional

from processing.config import get_settings
from processing.engine import embedded_engine_supported
from processing.video import EmbeddedVideoBackend, VideoBackend


BACKEND_CHOICES = ("auto", "embedded", "remote")


def select_video_backend(preference: Optional[str] = None) -> VideoBackend:
    """Pick the backend once, up front, from configuration and capability.

    ``auto`` prefers the embedded engine and only chooses the remote service
    when the embedded engine cannot run in this environment. A call that
    later fails on the chosen backend is never rerouted to the other one.
    """
    from integrations.remote import RemoteVideoBackend

    settings = get_settings()
    preference = (preference or settings.video_backend).lower()
    if preference not in BACKEND_CHOICES:
        raise ValueError(f"Unknown video backend: {preference}. Choose from {', '.join(BACKEND_CHOICES)}")

    if preference == "embedded":
        return EmbeddedVideoBackend()
    if preference == "remote":
        return RemoteVideoBackend(settings.api_url)

    if embedded_engine_supported(settings.engine_sources):
        return EmbeddedVideoBackend()

    logging.info("Embedded codec engine unavailable here; using compression service at %s", settings.api_url)
    return RemoteVideoBackend(settings.api_url)

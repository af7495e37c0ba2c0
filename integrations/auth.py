"""API key check for the compression service endpoints.

Keys come from OPTIPIX_API_KEYS; with none configured every request passes.
"""

import json
import logging
from typing import Optional

import azure.functions as func

from processing.config import get_settings


BEARER_PREFIX = "Bearer "


def presented_api_key(req: func.HttpRequest) -> Optional[str]:
    """Key sent as ``X-Api-Key`` or ``Authorization: Bearer <key>``."""
    key = req.headers.get("X-Api-Key")
    if key:
        return key.strip() or None
    authorization = req.headers.get("Authorization") or ""
    if authorization.startswith(BEARER_PREFIX):
        return authorization[len(BEARER_PREFIX):].strip() or None
    return None


def auth_error(req: func.HttpRequest) -> Optional[str]:
    """Reason the request is rejected, or None when it may proceed."""
    accepted = get_settings().api_keys
    if not accepted:
        return None

    key = presented_api_key(req)
    if key is None:
        return "Missing API key. Provide X-Api-Key header or Authorization: Bearer <key>"
    if key not in accepted:
        logging.warning("Rejected request to %s: unknown API key", req.url)
        return "Invalid API key"
    return None


def require_auth(req: func.HttpRequest) -> Optional[func.HttpResponse]:
    """Return a 401 response if auth fails, None if it succeeds."""
    error = auth_error(req)
    if error is None:
        return None
    return func.HttpResponse(
        body=json.dumps({"error": error}),
        mimetype="application/json",
        status_code=401,
    )

"""
Static admin-token check for the administrative JSON API.
"""

from __future__ import annotations

import hmac
from functools import wraps
from http import HTTPStatus

from flask import current_app, jsonify, request

UNAUTHORIZED_MESSAGE = "ليست لديك صلاحية للوصول إلى هذه الواجهة."
UNCONFIGURED_MESSAGE = "لم يتم إعداد رمز الوصول الإداري."


def _presented_token() -> str:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.headers.get("X-Admin-Token", "").strip()


def admin_token_required(view):
    """Reject the request unless it carries the configured ``ADMIN_API_TOKEN``."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            current_app.logger.error("ADMIN_API_TOKEN is not configured; rejecting admin request.")
            return jsonify({"success": False, "error": UNCONFIGURED_MESSAGE}), HTTPStatus.SERVICE_UNAVAILABLE

        presented = _presented_token()
        if not presented or not hmac.compare_digest(presented.encode("utf-8"), str(expected).encode("utf-8")):
            current_app.logger.warning(
                "Rejected admin request with invalid token",
                extra={"remote_addr": request.remote_addr, "path": request.path},
            )
            return jsonify({"success": False, "error": UNAUTHORIZED_MESSAGE}), HTTPStatus.UNAUTHORIZED
        return view(*args, **kwargs)

    return wrapper

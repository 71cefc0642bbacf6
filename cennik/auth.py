"""Admin login and the optional site-wide basic auth.

Passwords in credentials.json are compared in plaintext and the session
token is just an encoded ``username:role:millis:random`` string. Nothing
verifies it server-side; it only tells the admin UI who logged in.
"""

import base64
import random
import string
import time
from typing import Any, Dict, List, Optional, Tuple

from flask import Response, current_app, request

from .errors import CennikError
from .logging_config import log_event

__all__ = [
    "AuthenticationError",
    "find_user",
    "issue_token",
    "decode_token",
    "login",
    "require_basic_auth",
]

DEFAULT_ROLE = "admin"


class AuthenticationError(CennikError):
    status_code = 401
    error_type = "authentication_error"


def find_user(credentials: List[Dict[str, Any]], username: str, password: str) -> Optional[Dict[str, Any]]:
    for user in credentials:
        if user.get("username") == username and user.get("password") == password:
            return user
    return None


def issue_token(username: str, role: str = DEFAULT_ROLE) -> str:
    nonce = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(11))
    raw = f"{username}:{role}:{int(time.time() * 1000)}:{nonce}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_token(token: str) -> Optional[Tuple[str, str]]:
    """(username, role) from a token, or None when it does not decode."""
    try:
        raw = base64.b64decode(token, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    parts = raw.split(":")
    if len(parts) < 4:
        return None
    return parts[0], parts[1]


def login(credentials: List[Dict[str, Any]], username: str, password: str) -> Dict[str, Any]:
    user = find_user(credentials, username, password)
    if user is None:
        log_event("login_failed", {"username": username})
        raise AuthenticationError("Nieprawidłowy login lub hasło")
    role = user.get("role") or DEFAULT_ROLE
    log_event("login", {"username": username, "role": role})
    return {"token": issue_token(username, role), "role": role, "username": username}


# ---------- BASIC AUTH ----------


def _unauthorized() -> Response:
    return Response(
        "Authentication required",
        401,
        {"WWW-Authenticate": 'Basic realm="Login Required"'},
    )


def require_basic_auth() -> Optional[Response]:
    """
    Enforce HTTP Basic Auth for all routes.
    Skips enforcement if credentials are not configured (SITE_USER/SITE_PASS unset).
    """
    user = current_app.config.get("SITE_USER")
    password = current_app.config.get("SITE_PASS")
    if not user or not password:
        return None  # auth disabled

    header = request.headers.get("Authorization", "")
    if not header.startswith("Basic "):
        return _unauthorized()

    try:
        decoded = base64.b64decode(header.split(" ", 1)[1]).decode("utf-8")
        username, passwd = decoded.split(":", 1)
    except (ValueError, UnicodeDecodeError):
        return _unauthorized()

    if username == user and passwd == password:
        return None
    return _unauthorized()

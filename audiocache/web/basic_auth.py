from __future__ import annotations

import base64
import binascii
import os
import secrets
from typing import Optional, Tuple

from fastapi import HTTPException, Request, status


def _credentials() -> Optional[Tuple[str, str]]:
    user = os.getenv("BASIC_AUTH_USER")
    password = os.getenv("BASIC_AUTH_PASS")
    if not user or not password:
        return None
    return user, password


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Basic"},
    )


def require_basic_auth(request: Request) -> None:
    """Router dependency; a no-op unless BASIC_AUTH_USER and BASIC_AUTH_PASS are both set."""
    expected = _credentials()
    if expected is None:
        return

    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        raise _unauthorized("Basic auth required")
    try:
        decoded = base64.b64decode(auth_header.split(" ", 1)[1], validate=True).decode("utf-8")
        provided_user, provided_pass = decoded.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise _unauthorized("Invalid auth header")
    user_ok = secrets.compare_digest(provided_user.encode("utf-8"), expected[0].encode("utf-8"))
    pass_ok = secrets.compare_digest(provided_pass.encode("utf-8"), expected[1].encode("utf-8"))
    if not (user_ok and pass_ok):
        raise _unauthorized("Invalid credentials")

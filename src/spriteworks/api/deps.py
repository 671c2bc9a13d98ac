"""Request dependencies for the Spriteworks API."""

from __future__ import annotations

from fastapi import Request

from spriteworks.core.errors import Unauthorized


def current_user(request: Request) -> str:
    """Resolve the caller's user id from an ``Authorization: Bearer`` header.

    Tokens are configured as ``SPRITEWORKS_API_TOKENS`` and loaded onto
    ``app.state.tokens`` at startup.

    Raises:
        Unauthorized: If the header is missing, malformed or unknown.
    """
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Missing bearer token")
    user_id = request.app.state.tokens.get(token.strip())
    if not user_id:
        raise Unauthorized("Invalid bearer token")
    return user_id

"""Caller identity extraction from headers set by the upstream auth layer."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

USER_ID_HEADER = "x-user-id"


@dataclass(frozen=True)
class RequestContext:
    user_id: str | None
    request_id: str | None


def extract_request_context(request: Request) -> RequestContext:
    """Build RequestContext from the auth-provided headers."""
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip() or None
    return RequestContext(
        user_id=user_id,
        request_id=request.headers.get("x-request-id"),
    )


def require_owner_id(request: Request) -> str:
    """FastAPI dependency: the authenticated caller's id, or 401."""
    ctx = extract_request_context(request)
    if not ctx.user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return ctx.user_id

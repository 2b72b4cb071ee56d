"""
Caller identity.

Session and token validation happen upstream; by the time a request reaches
the billing routes the authenticated user id is on request.state (set by the
auth layer) or in the trusted X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request


def get_current_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the authenticated user id (401 otherwise)."""
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id

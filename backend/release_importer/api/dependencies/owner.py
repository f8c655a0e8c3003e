"""Owner context for per-user session scoping."""

from fastapi import Header, HTTPException, status


def get_owner(x_user_id: str | None = Header(None)) -> str:
    """Identity is handled upstream; the gateway forwards the user id in X-User-Id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()

"""Caller identity from Authentik forward-auth headers injected by the reverse proxy."""

from fastapi import Depends, HTTPException, Request

from .models import Actor


async def get_actor(request: Request) -> Actor:
    """Return the authenticated user, or the anonymous actor when no headers are present."""
    uid = request.headers.get("X-Authentik-UID", "").strip()
    if not uid:
        return Actor.anonymous()

    return Actor.user(
        user_id=uid,
        email=request.headers.get("X-Authentik-Email") or None,
        username=request.headers.get("X-Authentik-Username") or None,
    )


async def require_actor(actor: Actor = Depends(get_actor)) -> Actor:
    """Dependency for endpoints that only make sense after login."""
    if not actor.is_authenticated:
        raise HTTPException(status_code=401, detail="Missing authentication headers")
    return actor

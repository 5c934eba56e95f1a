"""
Pending intent token.

The id of an intent that is waiting on a login detour is kept in a single
HttpOnly cookie. A cookie survives the full-page redirect through the identity
provider and is shared by every tab on the device, so there is exactly one
slot: a newer login-gated intent overwrites it and the older intent simply
expires unconsumed.
"""

from typing import Optional

from fastapi import Request, Response

from .config import CookieSettings


class PendingTokenCookie:
    """Reads, writes and clears the single pending-intent slot."""

    def __init__(self, settings: Optional[CookieSettings] = None, max_age: int = 15 * 60):
        self.settings = settings or CookieSettings()
        self.max_age = max_age

    @property
    def name(self) -> str:
        return self.settings.name

    def write(self, response: Response, intent_id: str):
        response.set_cookie(
            key=self.settings.name,
            value=intent_id,
            max_age=self.max_age,
            httponly=True,
            secure=self.settings.secure,
            samesite="lax",
            domain=self.settings.domain,
            path="/",
        )

    def read(self, request: Request) -> Optional[str]:
        return request.cookies.get(self.settings.name) or None

    def clear(self, response: Response):
        response.delete_cookie(
            key=self.settings.name,
            domain=self.settings.domain,
            path="/",
            secure=self.settings.secure,
            httponly=True,
            samesite="lax",
        )

"""
Refresh-token cookie handling.

The refresh token only ever travels in this cookie:
HttpOnly, Path=/, SameSite=Lax, Secure in production.
"""
import os

from fastapi import Response

REFRESH_COOKIE_NAME = "refreshToken"


def is_production() -> bool:
    return os.getenv("APP_ENV", "development").lower() == "production"


def set_refresh_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=is_production(),
    )


def clear_refresh_cookie(response: Response) -> None:
    """Expire the cookie (Max-Age=0) with the same attributes it was set with."""
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="lax",
        secure=is_production(),
    )

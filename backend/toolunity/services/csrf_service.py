"""
CSRF protection (double-submit cookie)

The token is set in a readable cookie; browsers send it back in the
X-CSRF-Token header on state-changing requests. A cross-site page can make
the browser send the cookie but cannot read it to fill in the header.
"""

from __future__ import annotations

import hmac
import secrets

from ..errors import AuthorizationDenied


CSRF_COOKIE = "__csrf_token"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def tokens_match(cookie_token: str | None, header_token: str | None) -> bool:
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8"))


def verify_request(method: str, cookie_token: str | None, header_token: str | None) -> None:
    if method.upper() in SAFE_METHODS:
        return
    if not tokens_match(cookie_token, header_token):
        raise AuthorizationDenied("Invalid or missing CSRF token", reason="csrf_failed")


def set_csrf_cookie(response, token: str, *, secure: bool = False):
    response.set_cookie(
        CSRF_COOKIE,
        token,
        max_age=60 * 60 * 24,
        secure=secure,
        httponly=False,
        samesite="Strict",
        path="/",
    )
    return response

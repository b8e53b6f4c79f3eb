# Overview: Request and permission decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, g, request

from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    RateLimited,
    error_response,
)
from .services import csrf_service, session_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid session.

    Sets g.current_user and g.session_context. Returns 401 if there is no
    Authorization header, the token is invalid or expired, or the account
    was deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return error_response(AuthenticationRequired("Authentication required"))

        context = session_service.validate_session(token)
        if not context:
            return error_response(AuthenticationRequired("Invalid or expired token"))

        g.current_user = context.user
        g.session_context = context
        g.session_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_verified_email(f):
    """Must be stacked under @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, "current_user", None):
            return error_response(AuthenticationRequired("Authentication required"))
        if not g.current_user.email_verified:
            return error_response(
                AuthorizationDenied("Please verify your email address first", reason="email_not_verified")
            )
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, "current_user", None):
            return error_response(AuthenticationRequired("Authentication required"))
        if not g.current_user.is_admin:
            return error_response(AuthorizationDenied("Admin access required"))
        return f(*args, **kwargs)

    return decorated_function


def require_csrf(f):
    """Double-submit check: __csrf_token cookie must equal the X-CSRF-Token header."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            csrf_service.verify_request(
                request.method,
                request.cookies.get(csrf_service.CSRF_COOKIE),
                request.headers.get(csrf_service.CSRF_HEADER),
            )
        except AuthorizationDenied as exc:
            current_app.logger.warning("CSRF check failed for %s %s", request.method, request.path)
            return error_response(exc)
        return f(*args, **kwargs)

    return decorated_function


def _rate_limit_key(by: str) -> str:
    if by == "user" and getattr(g, "current_user", None):
        return f"user:{g.current_user.id}"
    if by == "email":
        payload = request.get_json(silent=True) or {}
        email = str(payload.get("email") or "").strip().lower()
        if email:
            return f"email:{email}"
    return f"ip:{request.remote_addr or 'unknown'}"


def rate_limit(name: str, by: str = "ip"):
    """
    Count the request against a named limit (see rate_limit_service.LIMITS).

    by="user" must be stacked under @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            limiter = current_app.extensions["rate_limiter"]
            try:
                limiter.hit(name, _rate_limit_key(by))
            except RateLimited as exc:
                current_app.logger.warning("Rate limit '%s' exceeded for %s", name, _rate_limit_key(by))
                return error_response(exc)
            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_cron_secret(f):
    """Scheduler endpoints: Authorization: Bearer <CRON_SECRET>."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        token = _bearer_token()
        if not secret or not token or not hmac.compare_digest(token, secret):
            return error_response(AuthenticationRequired("Invalid cron secret"))
        return f(*args, **kwargs)

    return decorated_function

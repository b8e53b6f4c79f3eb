# Overview: Domain error taxonomy shared by services and routes.

"""
Error taxonomy

Services raise these; routes translate them with error_response().
Each class carries the HTTP status it maps to, so the translation
lives in one place instead of every route.

    ToolUnityError            500  base class
    AuthenticationRequired    401  no or invalid session
    AuthorizationDenied       403  wrong owner / role / tier
    ValidationFailed          400  bad shape or value
    NotFound                  404
    PreconditionFailed        409  entity is in the wrong state for the command
    RateLimited               429  carries retry_after (seconds)
    ExternalServiceFailure    502  payment / email collaborator error
"""

from __future__ import annotations

from flask import jsonify


class ToolUnityError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message or self.code, "code": self.code}
        body.update(self.details)
        return body


class AuthenticationRequired(ToolUnityError):
    status_code = 401
    code = "not_authenticated"


class AuthorizationDenied(ToolUnityError):
    status_code = 403
    code = "forbidden"


class ValidationFailed(ToolUnityError):
    status_code = 400
    code = "validation_error"


class NotFound(ToolUnityError):
    status_code = 404
    code = "not_found"


class PreconditionFailed(ToolUnityError):
    status_code = 409
    code = "precondition_failed"


class RateLimited(ToolUnityError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests. Please try again later.", *, retry_after: int = 60):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class ExternalServiceFailure(ToolUnityError):
    status_code = 502
    code = "external_service_failure"

    def __init__(self, message: str = "", *, service: str = "unknown"):
        super().__init__(message, service=service)
        self.service = service


def error_response(exc: ToolUnityError):
    """Build the JSON error response for a domain error."""
    response = jsonify(exc.to_dict())
    response.status_code = exc.status_code
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response

# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API Routes

SECURITY:
- Signup and login rate limited per IP (5/minute)
- Verification emails rate limited per email (3/hour)
- All state-changing requests carry the CSRF double-submit token
- Session tokens returned once at login; only their hash is stored
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import rate_limit, require_auth, require_csrf
from ..errors import ToolUnityError, error_response
from ..services import auth_service, csrf_service, session_service, tier_service


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.get("/csrf")
def csrf_token_route():
    """Issue a CSRF token: returned in the body and set as the __csrf_token cookie."""
    token = request.cookies.get(csrf_service.CSRF_COOKIE) or csrf_service.generate_csrf_token()
    response = jsonify({"csrf_token": token})
    return csrf_service.set_csrf_cookie(
        response, token, secure=current_app.config.get("SESSION_COOKIE_SECURE", False)
    )


@auth_bp.post("/signup")
@require_csrf
@rate_limit("auth")
def signup_route():
    """
    Request body:
    {
        "email": "sam@example.com",
        "username": "sam_b",
        "password": "Password123!",
        "phone_number": "07700900123"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.signup(
            email=data.get("email"),
            username=data.get("username"),
            password=data.get("password") or "",
            phone_number=data.get("phone_number"),
        )
        return jsonify({
            "user": user.to_dict(private=True),
            "message": "Account created. Check your email to verify your address.",
        }), 201
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Signup failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
@require_csrf
@rate_limit("auth")
def login_route():
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.authenticate(data.get("identifier") or data.get("email"), data.get("password"))
        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "token": token,
            "expires_at": session.to_dict()["expires_at"],
            "user": user.to_dict(private=True),
        })
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_csrf
@require_auth
def logout_route():
    session_service.revoke_session(g.session_token)
    return jsonify({"message": "Logged out"})


@auth_bp.get("/me")
@require_auth
def me_route():
    user = g.current_user
    return jsonify({"user": user.to_dict(private=True), "tier": tier_service.get_tier_status(user)})


@auth_bp.post("/verify-email")
@require_csrf
def verify_email_route():
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.verify_email(data.get("token") or request.args.get("token"))
        return jsonify({"message": "Email verified", "user": user.to_dict(private=True)})
    except ToolUnityError as e:
        return error_response(e)


@auth_bp.post("/resend-verification")
@require_csrf
@require_auth
@rate_limit("verification", by="user")
def resend_verification_route():
    try:
        auth_service.resend_verification(g.current_user)
        return jsonify({"message": "Verification email sent"})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Resending verification failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/reset-password")
@require_csrf
@rate_limit("password_reset", by="email")
def request_password_reset_route():
    """Request body: {"email": "sam@example.com"}. Same answer whether or not the account exists."""
    try:
        data = request.get_json(silent=True) or {}
        auth_service.request_password_reset(data.get("email"))
        return jsonify({"message": "If that email has an account, a reset link is on its way"})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Password reset request failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.put("/reset-password")
@require_csrf
@rate_limit("auth")
def reset_password_route():
    """Request body: {"token": "<from the email>", "password": "NewPassword123!"}"""
    try:
        data = request.get_json(silent=True) or {}
        auth_service.reset_password(data.get("token"), data.get("password") or "")
        return jsonify({"message": "Password updated. Please log in again."})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Password reset failed")
        return jsonify({"error": "Internal server error"}), 500

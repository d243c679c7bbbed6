"""Auth API routes"""
import secrets
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from app.schemas.auth import RegisterRequest, LoginRequest, ForgotPasswordRequest, ResetPasswordRequest
from app.services.auth_service import (
    register_user, login_user, logout_user, forgot_password_with_email,
    reset_password_with_validation, get_current_user_from_session
)
from app.core.exceptions import APIError
from app.core.security import set_auth_cookie, clear_auth_cookie, get_cookie_domain
from app.core.config import settings
from app.db.session import get_db
from app.db.redis import SESSION_TTL, get_or_create_csrf_token

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.get("/csrf")
def get_csrf_token_route(request: Request, response: Response):
    """Get or generate CSRF token for the session"""
    session_id = request.cookies.get("session_id")

    # Anonymous visitors get a session id so the token has something to bind to
    if not session_id:
        session_id = secrets.token_urlsafe(32)
        response.set_cookie(
            key="session_id",
            value=session_id,
            domain=get_cookie_domain(request),
            httponly=True,
            secure=settings.ENVIRONMENT == "production",
            samesite="lax",
            max_age=SESSION_TTL
        )

    return {"success": True, "csrf_token": get_or_create_csrf_token(session_id)}


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(request_data: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account"""
    try:
        result = register_user(request_data.email, request_data.password, db)
    except ValueError as e:
        error_msg = str(e)
        if "already registered" in error_msg:
            raise APIError(409, "User with this email already exists", "USER_EXISTS")
        raise APIError(400, error_msg, "VALIDATION_ERROR")
    return {"success": True, "message": "User created successfully", **result}


@router.post("/login")
def login(request_data: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Login user"""
    try:
        result = login_user(request_data.email, request_data.password, db)
    except ValueError as e:
        raise HTTPException(401, str(e))

    set_auth_cookie(response, result["session_id"], request)
    csrf_token = get_or_create_csrf_token(result["session_id"])
    response.headers["X-CSRF-Token"] = csrf_token
    return {"success": True, "user": result["user"], "csrf_token": csrf_token}


@router.post("/logout")
def logout(request: Request, response: Response):
    """Logout user"""
    session_id = request.cookies.get("session_id")
    result = logout_user(session_id)
    if session_id:
        clear_auth_cookie(response, request)
    return {"success": True, **result}


@router.get("/me")
def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get current logged-in user"""
    try:
        return {"success": True, **get_current_user_from_session(request.cookies.get("session_id"), db)}
    except Exception as e:
        # Anonymous answer on any error to prevent redirect loops
        logger.warning(f"Failed to resolve current user: {e}")
        return {"success": True, "user": None}


@router.post("/forgot-password")
def forgot_password(request_data: ForgotPasswordRequest, db: Session = Depends(get_db)):
    """Initiate password reset by sending a reset link"""
    return {"success": True, **forgot_password_with_email(request_data.email, db)}


@router.post("/reset-password")
def reset_password(request_data: ResetPasswordRequest, db: Session = Depends(get_db)):
    """Complete password reset using the token from the emailed link"""
    try:
        return {"success": True, **reset_password_with_validation(request_data.token, request_data.password, db)}
    except ValueError as e:
        raise APIError(400, str(e), "VALIDATION_ERROR")

"""Middleware and exception handlers for the FastAPI application"""
import logging
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.security import (
    get_allowed_origins, get_client_identifier, check_rate_limit,
    validate_origin_referer, log_api_access, get_cookie_domain
)
from app.db.redis import get_or_create_csrf_token

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

CALLBACK_PATHS = {"/api/twitter/callback"}

PUBLIC_PATHS = {
    "/api/auth/csrf",
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/logout",
    "/api/auth/me",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
    "/metrics",
    "/health",
}

# Responses of these paths replace the session cookie, so the incoming session's
# CSRF token must not be echoed back
SESSION_CHANGING_PATHS = {"/api/auth/login", "/api/auth/logout"}


def error_body(error: str, code: str = None) -> dict:
    body = {"success": False, "error": error}
    if code:
        body["code"] = code
    return body


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-CSRF-Token"],
    )


def _rejection(request: Request, status_code: int, error: str, code: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=error_body(error, code))
    # Short-circuited responses bypass CORSMiddleware's response headers
    origin = request.headers.get("Origin")
    if origin and origin.rstrip("/") in get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


async def security_middleware(request: Request, call_next):
    """Rate limiting, origin checks, CSRF token delivery and API access logging"""
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None

    try:
        path = request.url.path
        is_callback = path in CALLBACK_PATHS
        is_public_endpoint = path in PUBLIC_PATHS

        if not is_callback:
            identifier = get_client_identifier(request, session_id)
            is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]
            if not check_rate_limit(identifier, strict=is_state_changing):
                error = "Rate limit exceeded"
                status_code = 429
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                return _rejection(request, 429, "Rate limit exceeded. Please try again later.", "RATE_LIMITED")

            needs_origin_check = (
                not is_public_endpoint
                and request.method != "OPTIONS"
                and (request.method != "GET" or settings.ENVIRONMENT == "production")
            )
            if needs_origin_check and not validate_origin_referer(request):
                error = "Invalid origin or referer"
                status_code = 403
                security_logger.warning(f"Origin/Referer validation failed - Path: {path}")
                return _rejection(request, 403, "Invalid origin or referer", "INVALID_ORIGIN")

        response = await call_next(request)
        status_code = response.status_code

        # Hand the CSRF token to the client on every successful authenticated response
        if session_id and not is_callback and path not in SESSION_CHANGING_PATHS and status_code < 400:
            csrf_token = get_or_create_csrf_token(session_id)
            response.headers["X-CSRF-Token"] = csrf_token
            response.set_cookie(
                key="csrf_token_client",
                value=csrf_token,
                domain=get_cookie_domain(request),
                httponly=False,  # read by the frontend
                secure=settings.ENVIRONMENT == "production",
                samesite="lax",
                path="/"
            )

        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTPException (and APIError) in the error envelope"""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), getattr(exc, "code", None)),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request validation failures are 400 VALIDATION_ERROR"""
    errors = exc.errors()
    message = "Invalid request data"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)

    body = error_body(message, "VALIDATION_ERROR")
    body["details"] = [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
        for e in errors
    ]
    return JSONResponse(status_code=400, content=body)


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))

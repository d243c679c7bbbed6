"""Security dependencies, rate limiting and session cookies"""
import ipaddress
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from fastapi import Depends, Header, HTTPException, Request, Response

from app.db.redis import SESSION_TTL, get_session, get_csrf_token, check_rate_limit as redis_check_rate_limit
from app.core.config import settings

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]


def get_allowed_origins() -> list:
    """Origins allowed for CORS and state-changing requests"""
    allowed_origins = [settings.FRONTEND_URL.rstrip("/")]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend(DEV_ORIGINS)
    return allowed_origins


def get_optional_user(request: Request) -> Optional[int]:
    """Dependency: user_id for the session cookie, None when anonymous"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None
    return get_session(session_id)


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")
    return user_id


async def require_csrf_new(
    request: Request,
    user_id: int = Depends(require_auth),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token")
) -> int:
    """Dependency: Require auth + valid CSRF token, return user_id

    The token is read from the X-CSRF-Token header only; reading the body here
    would consume it before the route sees it.
    """
    session_id = request.cookies.get("session_id")
    expected_csrf = get_csrf_token(session_id)
    if not expected_csrf or x_csrf_token != expected_csrf:
        security_logger.warning(
            f"CSRF validation failed - User: {user_id}, "
            f"IP: {get_client_ip(request)}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Invalid or missing CSRF token")
    return user_id


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_client_ip(request)}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit

    Args:
        identifier: Client identifier (session ID or IP)
        strict: If True, use stricter rate limits for state-changing operations
    """
    return redis_check_rate_limit(identifier, strict=strict)


def validate_origin_referer(request: Request) -> bool:
    """Validate Origin and Referer headers against the allowed origins"""
    origin = request.headers.get("Origin")
    referer = request.headers.get("Referer")
    allowed_origins = get_allowed_origins()

    # Non-browser clients in development send neither header
    if settings.ENVIRONMENT == "development" and not origin and not referer:
        return True

    if origin and origin.rstrip("/") in allowed_origins:
        return True

    if referer:
        parsed = urlparse(referer)
        if f"{parsed.scheme}://{parsed.netloc}" in allowed_origins:
            return True

    return False


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log one JSON line per request on the api_access logger"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        # query strings carry OAuth codes on the callback
        "query": "redacted" if request.url.path == "/api/twitter/callback" else (str(request.url.query) or None),
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")


def get_cookie_domain(request: Request) -> Optional[str]:
    """Parent domain for cross-subdomain cookies, None for localhost and IPs"""
    host = request.headers.get("host", settings.DOMAIN).split(":")[0]
    try:
        ipaddress.ip_address(host)
        return None
    except ValueError:
        pass
    domain_parts = host.split(".")
    if len(domain_parts) >= 2:
        return "." + ".".join(domain_parts[-2:])
    return None


def set_auth_cookie(response: Response, session_id: str, request: Request) -> None:
    """Set the HttpOnly session cookie"""
    response.set_cookie(
        key="session_id",
        value=session_id,
        domain=get_cookie_domain(request),
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=SESSION_TTL
    )


def clear_auth_cookie(response: Response, request: Request) -> None:
    response.delete_cookie("session_id", domain=get_cookie_domain(request))

"""Twitter connection, posting and scheduling routes"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    APIError, ExpiredState, InvalidState, InvalidTransition, NotConnected, TwitterAPIError
)
from app.core.security import require_auth, require_csrf_new, get_optional_user
from app.db.session import get_db
from app.schemas.twitter import PostTweetRequest, ScheduleTweetRequest, UpdateScheduleRequest
from app.services import twitter_service, tweet_service

router = APIRouter(prefix="/api/twitter", tags=["twitter"])
twitter_logger = logging.getLogger("twitter")


def _frontend_redirect(path: str, **params) -> RedirectResponse:
    url = f"{settings.FRONTEND_URL.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=302)


def _dashboard_error(error: str, description: str) -> RedirectResponse:
    return _frontend_redirect("/dashboard", twitter_error=error, twitter_error_description=description)


def _not_found_or_bad_request(e: ValueError):
    error_msg = str(e)
    if "not found" in error_msg:
        raise APIError(404, error_msg, "NOT_FOUND")
    raise APIError(400, error_msg, "VALIDATION_ERROR")


# ============================================================================
# CONNECTION
# ============================================================================

@router.post("/auth")
async def start_auth(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)):
    """Start the OAuth 2.0 PKCE flow and return the Twitter consent URL"""
    if await twitter_service.get_valid_tokens(user_id, db):
        raise APIError(409, "Twitter account already connected", "ALREADY_CONNECTED")

    try:
        result = twitter_service.generate_auth_url(user_id)
    except Exception as e:
        twitter_logger.error(f"Twitter auth initiation failed for user {user_id}: {e}", exc_info=True)
        raise APIError(500, "Failed to initiate Twitter authentication", "AUTH_INIT_ERROR")

    return {"success": True, "authUrl": result["auth_url"], "state": result["state"]}


@router.get("/auth")
async def auth_status(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Whether the user has usable Twitter credentials"""
    connected = bool(await twitter_service.get_valid_tokens(user_id, db))
    return {"success": True, "isConnected": connected, "hasValidTokens": connected}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    user_id: Optional[int] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Twitter redirects here after consent; outcome is passed to the dashboard"""
    if error:
        twitter_logger.warning(f"Twitter OAuth error: {error} ({error_description})")
        return _dashboard_error(error, error_description or "Unknown error")

    if not code or not state:
        return _dashboard_error("invalid_request", "Missing authorization code or state")

    if not user_id:
        return _frontend_redirect("/auth/login", error="authentication_required")

    try:
        result = await twitter_service.handle_callback(code, state, db, user_id=user_id)
    except ExpiredState:
        return _dashboard_error("expired_state", "Authentication state has expired. Please try again.")
    except InvalidState:
        return _dashboard_error("invalid_state", "Invalid or expired authentication state")
    except Exception as e:
        twitter_logger.error(f"Twitter OAuth callback failed for user {user_id}: {e}", exc_info=True)
        message = str(e) if isinstance(e, ValueError) else "Failed to complete Twitter authentication"
        return _dashboard_error("callback_error", message)

    return _frontend_redirect(
        "/dashboard",
        twitter_connected="true",
        twitter_username=result["twitter_user"]["username"]
    )


@router.get("/status")
def connection_status(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Connection status from stored state, plus posting counters"""
    status = twitter_service.get_connection_status(user_id, db)
    return {"success": True, **status, "stats": tweet_service.get_stats(user_id, db)}


@router.post("/status")
async def refresh_connection_status(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)):
    """Revalidate stored credentials and return the fresh status"""
    status = await twitter_service.validate_connection(user_id, db)
    message = "Twitter connection status refreshed." if status["isConnected"] else "No Twitter connection found to refresh."
    return {"success": True, **status, "message": message}


@router.post("/disconnect")
def disconnect(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)):
    """Remove the Twitter connection; scheduled tweets become drafts"""
    result = twitter_service.disconnect_user(user_id, db)
    if result["disconnected"]:
        message = "Twitter account disconnected successfully"
    else:
        message = "No Twitter account was connected"
    return {
        "success": True,
        "message": message,
        "convertedDrafts": result["converted_drafts"],
    }


@router.get("/disconnect")
def disconnect_summary(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """What disconnecting would affect"""
    return {"success": True, **twitter_service.get_disconnect_summary(user_id, db)}


@router.get("/debug")
async def debug(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Step-by-step diagnostics of the stored connection"""
    return {"success": True, "debug": await twitter_service.debug_connection(user_id, db)}


# ============================================================================
# POSTING
# ============================================================================

@router.post("/post")
async def post_tweet(
    request_data: PostTweetRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Post a tweet to Twitter now"""
    try:
        data = await tweet_service.post_tweet(user_id, request_data.content, db, tweet_id=request_data.tweet_id)
    except NotConnected as e:
        raise APIError(403, str(e), "NOT_CONNECTED")
    except TwitterAPIError as e:
        if e.kind == "duplicate":
            raise APIError(409, "This tweet appears to be a duplicate", "DUPLICATE_TWEET")
        if e.kind == "rate_limit":
            raise APIError(429, "Twitter rate limit exceeded. Please try again later.", "RATE_LIMITED")
        raise APIError(500, "Failed to post tweet to Twitter", "TWITTER_API_ERROR")
    except InvalidTransition as e:
        raise APIError(409, str(e), "INVALID_TRANSITION")
    except ValueError as e:
        _not_found_or_bad_request(e)

    return {"success": True, "data": data, "message": "Tweet posted successfully to Twitter"}


@router.get("/post")
def sent_tweets(
    limit: int = Query(10, ge=1),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Posting history"""
    return {"success": True, "data": tweet_service.list_sent_tweets(user_id, db, limit=min(limit, 50), offset=offset)}


# ============================================================================
# SCHEDULING
# ============================================================================

@router.post("/schedule")
async def schedule_tweet(
    request_data: ScheduleTweetRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Record a tweet for posting at a future time"""
    try:
        data = await tweet_service.schedule_tweet(
            user_id, request_data.content, request_data.scheduled_for, db,
            tweet_id=request_data.tweet_id
        )
    except NotConnected as e:
        raise APIError(403, str(e), "NOT_CONNECTED")
    except InvalidTransition as e:
        raise APIError(409, str(e), "INVALID_TRANSITION")
    except ValueError as e:
        _not_found_or_bad_request(e)

    return {"success": True, "data": data, "message": "Tweet scheduled successfully"}


@router.get("/schedule")
def scheduled_tweets(
    limit: int = Query(10, ge=1),
    offset: int = Query(0, ge=0),
    include_expired: bool = False,
    view: str = Query("scheduled", pattern="^(scheduled|upcoming|failed)$"),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Scheduled tweets, soonest first"""
    data = tweet_service.list_scheduled_tweets(
        user_id, db, limit=min(limit, 50), offset=offset, include_expired=include_expired, view=view
    )
    return {"success": True, "data": data}


@router.put("/schedule")
def update_scheduled_tweet(
    request_data: UpdateScheduleRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Edit, reschedule, cancel or retry a scheduled tweet"""
    try:
        data = tweet_service.update_schedule(
            user_id, request_data.tweet_id, db,
            action=request_data.action,
            content=request_data.content,
            scheduled_for=request_data.scheduled_for
        )
    except InvalidTransition as e:
        raise APIError(409, str(e), "INVALID_TRANSITION")
    except ValueError as e:
        _not_found_or_bad_request(e)

    messages = {
        "cancel": "Scheduled tweet cancelled and converted to draft",
        "retry": "Failed tweet queued for posting again",
        "update": "Scheduled tweet updated successfully",
    }
    return {"success": True, "data": data, "message": messages[request_data.action]}


@router.delete("/schedule")
def delete_scheduled_tweet(
    tweetId: int = Query(...),
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Delete a scheduled tweet"""
    try:
        tweet_service.delete_scheduled_tweet(user_id, tweetId, db)
    except ValueError as e:
        raise APIError(404, str(e), "NOT_FOUND")
    return {"success": True, "message": "Scheduled tweet deleted successfully"}

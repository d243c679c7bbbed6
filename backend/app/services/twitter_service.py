"""Twitter connection service - OAuth 2.0 lifecycle for a user's Twitter account

States: disconnected -> connecting (state + verifier in Redis) -> connected
(token row stored) -> connected | disconnected after revalidation.
"""
import logging
import secrets
import time
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import OAUTH_STATE_TTL, TOKEN_VALIDATION_INTERVAL_HOURS
from app.core.exceptions import (
    InvalidState, ExpiredState, TokenRefreshFailed, TokensRevoked, TwitterAPIError
)
from app.core.metrics import token_refresh_counter
from app.db.helpers import (
    get_twitter_tokens, decrypt_twitter_tokens, save_twitter_tokens,
    mark_twitter_tokens_verified, delete_twitter_tokens, check_token_expiration,
    update_user_twitter_info, clear_user_twitter_info, get_user_twitter_info,
    convert_scheduled_tweets_to_drafts, count_scheduled_tweets, as_utc, utcnow
)
from app.db.redis import (
    set_oauth_state, consume_oauth_state, get_cached_twitter_status, set_cached_twitter_status
)
from app.services import twitter_client

logger = logging.getLogger(__name__)
twitter_logger = logging.getLogger("twitter")


def classify_token_error(message: str) -> str:
    """Decide how to react to a failed credential check: 'refresh' or 'disconnect'"""
    lowered = (message or "").lower()
    if "expired" in lowered or "invalid_token" in lowered:
        return "refresh"
    if "revoked" in lowered or "unauthorized" in lowered:
        return "disconnect"
    return "refresh"


# ============================================================================
# AUTHORIZATION
# ============================================================================

def generate_auth_url(user_id: int) -> Dict[str, str]:
    """Start a PKCE authorization for a user

    Returns:
        dict with auth_url and state
    """
    verifier, challenge = twitter_client.generate_pkce_pair()
    state = f"twitter_{user_id}_{int(time.time() * 1000)}_{secrets.token_urlsafe(9)}"
    auth_url = twitter_client.build_authorization_url(state, challenge)

    set_oauth_state(state, {
        "code_verifier": verifier,
        "user_id": user_id,
        "created_at": time.time(),
    })

    twitter_logger.info(f"Initiating auth flow for user {user_id}")
    return {"auth_url": auth_url, "state": state}


async def handle_callback(code: str, state: str, db: Session,
                          user_id: Optional[int] = None) -> Dict[str, Any]:
    """Complete the authorization: consume the state, exchange the code, store tokens

    Args:
        code: Authorization code returned by Twitter
        state: State string issued by generate_auth_url
        db: Database session
        user_id: Logged-in user, if known; must own the state

    Returns:
        dict: The connected Twitter user (id, username, name) and owning user_id

    Raises:
        InvalidState: Unknown, already used, or foreign state
        ExpiredState: State older than the OAuth state TTL
        TwitterAPIError: Twitter rejected the code exchange or profile lookup
    """
    stored = consume_oauth_state(state)
    if not stored:
        raise InvalidState("Invalid or expired OAuth state")

    if time.time() - float(stored.get("created_at", 0)) > OAUTH_STATE_TTL:
        raise ExpiredState("OAuth state has expired")

    owner_id = int(stored["user_id"])
    if user_id is not None and owner_id != user_id:
        twitter_logger.warning(f"OAuth state for user {owner_id} presented by user {user_id}")
        raise InvalidState("Invalid or expired OAuth state")

    tokens = await twitter_client.exchange_code(code, stored["code_verifier"])
    twitter_user = await twitter_client.get_me(tokens["access_token"])

    save_twitter_tokens(
        owner_id,
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        expires_at=tokens["expires_at"],
        twitter_user=twitter_user,
        db=db,
    )
    update_user_twitter_info(owner_id, twitter_user, db)

    twitter_logger.info(f"User {owner_id} connected Twitter account @{twitter_user['username']}")
    return {"user_id": owner_id, "twitter_user": twitter_user}


# ============================================================================
# TOKEN LIFECYCLE
# ============================================================================

async def get_valid_tokens(user_id: int, db: Session) -> Optional[Dict[str, Any]]:
    """Return usable credentials for a user, refreshing or disconnecting as needed

    Remote validation only happens when the locally tracked state cannot vouch
    for the token: first use, or last verification older than the validation
    interval. Expired tokens are refreshed without probing.

    Returns:
        Decrypted credentials dict, or None if the user is not connected
    """
    token = get_twitter_tokens(user_id, db=db)
    if not token:
        return None

    try:
        credentials = decrypt_twitter_tokens(token)
    except ValueError:
        twitter_logger.error(f"Stored Twitter tokens for user {user_id} cannot be decrypted, disconnecting")
        disconnect_user(user_id, db)
        return None

    if check_token_expiration(token)["expired"]:
        twitter_logger.info(f"Access token for user {user_id} expired locally, refreshing")
        return await _refresh_or_none(user_id, db)

    last_verified = credentials["last_verified_at"]
    if last_verified and utcnow() - last_verified < timedelta(hours=TOKEN_VALIDATION_INTERVAL_HOURS):
        return credentials

    try:
        await twitter_client.get_me(credentials["access_token"])
    except TwitterAPIError as e:
        if e.kind in ("rate_limit", "network"):
            twitter_logger.warning(f"Could not validate tokens for user {user_id} ({e.kind}), using stored tokens")
            return credentials

        action = classify_token_error(str(e))
        twitter_logger.warning(f"Token validation failed for user {user_id}: {e} -> {action}")
        if action == "disconnect":
            disconnect_user(user_id, db)
            return None
        return await _refresh_or_none(user_id, db)

    mark_twitter_tokens_verified(user_id, db=db)
    credentials["last_verified_at"] = utcnow()
    return credentials


async def _refresh_or_none(user_id: int, db: Session) -> Optional[Dict[str, Any]]:
    try:
        return await refresh_user_tokens(user_id, db)
    except (TokensRevoked, TokenRefreshFailed):
        return None
    except TwitterAPIError as e:
        twitter_logger.warning(f"Token refresh for user {user_id} could not complete: {e}")
        return None


async def refresh_user_tokens(user_id: int, db: Session) -> Dict[str, Any]:
    """Exchange the stored refresh token for a new pair

    Raises:
        TokensRevoked: No refresh token stored (user is disconnected)
        TokenRefreshFailed: Twitter rejected the refresh (user is disconnected)
        TwitterAPIError: Twitter unreachable (tokens kept)
    """
    token = get_twitter_tokens(user_id, db=db)
    if not token:
        raise TokensRevoked("No Twitter tokens found")

    credentials = decrypt_twitter_tokens(token)
    if not credentials["refresh_token"]:
        twitter_logger.warning(f"No refresh token for user {user_id}, disconnecting")
        token_refresh_counter.labels(status="no_refresh_token").inc()
        disconnect_user(user_id, db)
        raise TokensRevoked("Twitter session expired. Please reconnect your account.")

    try:
        refreshed = await twitter_client.refresh_access_token(credentials["refresh_token"])
    except TwitterAPIError as e:
        if e.kind == "network":
            token_refresh_counter.labels(status="error").inc()
            raise
        twitter_logger.error(f"Token refresh failed for user {user_id}: {e}")
        token_refresh_counter.labels(status="failure").inc()
        disconnect_user(user_id, db)
        raise TokenRefreshFailed(f"Failed to refresh Twitter tokens: {e}")

    twitter_user = {
        "id": credentials["twitter_user_id"],
        "username": credentials["twitter_username"],
        "name": credentials["twitter_name"],
    }
    token = save_twitter_tokens(
        user_id,
        access_token=refreshed["access_token"],
        refresh_token=refreshed["refresh_token"] or credentials["refresh_token"],
        expires_at=refreshed["expires_at"],
        twitter_user=twitter_user,
        db=db,
    )
    token_refresh_counter.labels(status="success").inc()
    twitter_logger.info(f"Refreshed Twitter tokens for user {user_id}")
    return decrypt_twitter_tokens(token)


def disconnect_user(user_id: int, db: Session) -> Dict[str, Any]:
    """Remove a user's Twitter connection

    Deletes the token row, clears the cached identity and turns scheduled tweets
    back into drafts. Safe to call when already disconnected.
    """
    had_tokens = delete_twitter_tokens(user_id, db=db)
    clear_user_twitter_info(user_id, db)
    converted = convert_scheduled_tweets_to_drafts(user_id, db)
    if had_tokens:
        twitter_logger.info(f"Disconnected Twitter for user {user_id} ({converted} scheduled tweets moved to drafts)")
    return {"disconnected": had_tokens, "converted_drafts": converted}


# ============================================================================
# STATUS
# ============================================================================

def get_token_expiry(user_id: int, db: Session) -> Dict[str, Any]:
    token = get_twitter_tokens(user_id, db=db)
    if not token:
        return {"hasTokens": False, "expiresAt": None, "isExpired": True, "expiresInHours": None}

    expiry = check_token_expiration(token)
    expires_at = expiry["expires_at"]
    expires_in_hours = None
    if expires_at:
        expires_in_hours = max(0.0, round((expires_at - utcnow()).total_seconds() / 3600, 2))
    return {
        "hasTokens": True,
        "expiresAt": expires_at.isoformat() if expires_at else None,
        "isExpired": expiry["expired"],
        "expiresInHours": expires_in_hours,
    }


def get_connection_status(user_id: int, db: Session, use_cache: bool = True) -> Dict[str, Any]:
    """Connection summary built from stored state only (no Twitter call)"""
    if use_cache:
        cached = get_cached_twitter_status(user_id)
        if cached is not None:
            return cached

    token = get_twitter_tokens(user_id, db=db)
    if not token:
        status = {"isConnected": False, "user": None, "tokenExpiry": None, "lastVerified": None}
    else:
        last_verified = as_utc(token.last_verified_at)
        status = {
            "isConnected": True,
            "user": {
                "id": token.twitter_user_id,
                "username": token.twitter_username,
                "name": token.twitter_name,
            },
            "tokenExpiry": get_token_expiry(user_id, db),
            "lastVerified": last_verified.isoformat() if last_verified else None,
        }
    set_cached_twitter_status(user_id, status)
    return status


async def validate_connection(user_id: int, db: Session) -> Dict[str, Any]:
    """Force revalidation of stored tokens and return the fresh status"""
    await get_valid_tokens(user_id, db)
    return get_connection_status(user_id, db, use_cache=False)


def get_disconnect_summary(user_id: int, db: Session) -> Dict[str, Any]:
    """What a disconnect would affect"""
    connected = get_twitter_tokens(user_id, db=db) is not None
    scheduled = count_scheduled_tweets(user_id, db)
    warning = None
    if scheduled:
        warning = (
            f"You have {scheduled} scheduled tweet{'s' if scheduled != 1 else ''}. "
            "Disconnecting will convert them to drafts."
        )
    return {
        "isConnected": connected,
        "user": get_user_twitter_info(user_id, db),
        "scheduledTweetsCount": scheduled,
        "disconnectWarning": warning,
    }


async def debug_connection(user_id: int, db: Session) -> Dict[str, Any]:
    """Step-by-step diagnostics of the stored connection; never mutates state"""
    steps = []
    token = get_twitter_tokens(user_id, db=db)
    if not token:
        steps.append({"step": "token_retrieval", "success": False, "detail": "No Twitter tokens stored"})
        return {"userId": user_id, "steps": steps, "healthy": False}
    steps.append({"step": "token_retrieval", "success": True, "detail": f"Tokens found for @{token.twitter_username}"})

    try:
        credentials = decrypt_twitter_tokens(token)
    except ValueError as e:
        steps.append({"step": "token_format_check", "success": False, "detail": str(e)})
        return {"userId": user_id, "steps": steps, "healthy": False}

    expiry = check_token_expiration(token)
    steps.append({
        "step": "token_format_check",
        "success": bool(credentials["access_token"]),
        "detail": {
            "accessTokenLength": len(credentials["access_token"] or ""),
            "hasRefreshToken": bool(credentials["refresh_token"]),
            "expiryStatus": expiry["status"],
        },
    })

    try:
        me = await twitter_client.get_me(credentials["access_token"], detailed=True)
        steps.append({"step": "api_call_success", "success": True, "detail": me})
        healthy = True
    except TwitterAPIError as e:
        steps.append({"step": "api_call_failed", "success": False, "detail": {"error": str(e), "kind": e.kind}})
        healthy = False

    return {
        "userId": user_id,
        "steps": steps,
        "healthy": healthy,
        "checkedAt": datetime.now(timezone.utc).isoformat(),
    }

"""Twitter API v2 client - OAuth 2.0 (PKCE) token calls and tweet posting over httpx"""
import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from app.core.config import (
    settings, TWITTER_AUTH_URL, TWITTER_TOKEN_URL, TWITTER_ME_URL,
    TWITTER_TWEETS_URL, TWITTER_SCOPES, TWEET_MAX_LENGTH
)
from app.core.exceptions import TwitterAPIError

twitter_logger = logging.getLogger("twitter")

DUPLICATE_MESSAGE = "This tweet appears to be a duplicate. Please modify your content and try again."
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait before posting again."


def _require_credentials() -> None:
    if not settings.TWITTER_CLIENT_ID or not settings.TWITTER_CLIENT_SECRET:
        raise ValueError("Twitter OAuth not configured. Missing TWITTER_CLIENT_ID or TWITTER_CLIENT_SECRET.")


def _basic_auth_header() -> Dict[str, str]:
    raw = f"{settings.TWITTER_CLIENT_ID}:{settings.TWITTER_CLIENT_SECRET}".encode()
    return {
        "Authorization": f"Basic {base64.b64encode(raw).decode()}",
        "Content-Type": "application/x-www-form-urlencoded",
    }


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)"""
    verifier = secrets.token_urlsafe(64)
    challenge = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode()).digest()
    ).decode().rstrip("=")
    return verifier, challenge


def build_authorization_url(state: str, code_challenge: str) -> str:
    """Build the Twitter consent URL for an authorization-code + PKCE flow"""
    _require_credentials()
    params = {
        "response_type": "code",
        "client_id": settings.TWITTER_CLIENT_ID,
        "redirect_uri": settings.twitter_callback_url,
        "scope": " ".join(TWITTER_SCOPES),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{TWITTER_AUTH_URL}?{urlencode(params)}"


def parse_twitter_error(status_code: Optional[int], body: Any) -> TwitterAPIError:
    """Classify a failed Twitter response into a TwitterAPIError"""
    detail = ""
    if isinstance(body, dict):
        detail = (
            body.get("error_description")
            or body.get("detail")
            or body.get("title")
            or body.get("error")
            or ""
        )
        errors = body.get("errors")
        if not detail and isinstance(errors, list) and errors:
            detail = errors[0].get("message", "")
    elif body:
        detail = str(body)[:500]

    lowered = str(detail).lower()
    if status_code == 429 or "rate limit" in lowered:
        return TwitterAPIError(RATE_LIMIT_MESSAGE, kind="rate_limit", status_code=status_code)
    if "duplicate" in lowered:
        return TwitterAPIError(DUPLICATE_MESSAGE, kind="duplicate", status_code=status_code)
    if status_code == 401:
        return TwitterAPIError(f"Unauthorized: {detail or 'invalid or revoked token'}", kind="auth_error", status_code=status_code)
    if status_code is not None and status_code >= 400:
        return TwitterAPIError(f"Twitter API error ({status_code}): {detail or 'request failed'}", kind="api_error", status_code=status_code)
    return TwitterAPIError(f"Twitter API error: {detail or 'unknown error'}", kind="unknown", status_code=status_code)


def _raise_for_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
    except ValueError:
        body = response.text
    error = parse_twitter_error(response.status_code, body)
    twitter_logger.warning(f"Twitter API {response.request.method} {response.request.url.path} failed: {error}")
    raise error


def _token_payload(token_json: Dict[str, Any]) -> Dict[str, Any]:
    if "access_token" not in token_json:
        raise TwitterAPIError("No access_token in response", kind="api_error")
    expires_at = None
    if token_json.get("expires_in"):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(token_json["expires_in"]))
    return {
        "access_token": token_json["access_token"],
        "refresh_token": token_json.get("refresh_token"),
        "expires_at": expires_at,
        "scope": token_json.get("scope"),
    }


async def _request(method: str, url: str, **kwargs) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=settings.TWITTER_HTTP_TIMEOUT) as client:
            return await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        twitter_logger.error(f"Twitter request {method} {url} failed: {type(e).__name__}: {e}")
        raise TwitterAPIError(f"Could not reach Twitter: {type(e).__name__}", kind="network")


async def exchange_code(code: str, code_verifier: str) -> Dict[str, Any]:
    """Exchange an authorization code for an access/refresh token pair"""
    _require_credentials()
    response = await _request(
        "POST",
        TWITTER_TOKEN_URL,
        data={
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": settings.twitter_callback_url,
            "code_verifier": code_verifier,
            "client_id": settings.TWITTER_CLIENT_ID,
        },
        headers=_basic_auth_header(),
    )
    _raise_for_response(response)
    token_json = response.json()
    twitter_logger.info(
        f"Token exchange successful: has_refresh_token={'refresh_token' in token_json}, "
        f"expires_in={token_json.get('expires_in')}"
    )
    return _token_payload(token_json)


async def refresh_access_token(refresh_token: str) -> Dict[str, Any]:
    """Exchange a refresh token for a new token pair"""
    _require_credentials()
    response = await _request(
        "POST",
        TWITTER_TOKEN_URL,
        data={
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "client_id": settings.TWITTER_CLIENT_ID,
        },
        headers=_basic_auth_header(),
    )
    _raise_for_response(response)
    return _token_payload(response.json())


async def get_me(access_token: str, detailed: bool = False) -> Dict[str, Any]:
    """Fetch the authenticated Twitter user; doubles as a credential check"""
    params = {"user.fields": "public_metrics,verified"} if detailed else None
    response = await _request(
        "GET",
        TWITTER_ME_URL,
        params=params,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    _raise_for_response(response)
    data = response.json().get("data") or {}
    if not data.get("id"):
        raise TwitterAPIError("Twitter did not return a user profile", kind="api_error")

    user = {"id": str(data["id"]), "username": data.get("username", ""), "name": data.get("name", "")}
    if detailed:
        metrics = data.get("public_metrics") or {}
        user.update({
            "verified": bool(data.get("verified", False)),
            "followersCount": metrics.get("followers_count", 0),
            "followingCount": metrics.get("following_count", 0),
            "tweetCount": metrics.get("tweet_count", 0),
        })
    return user


async def post_tweet(access_token: str, text: str) -> Dict[str, Any]:
    """Publish a tweet

    Returns:
        dict with the Twitter-assigned id and the posted text
    """
    if not text or not text.strip():
        raise ValueError("Tweet content cannot be empty")
    if len(text) > TWEET_MAX_LENGTH:
        raise ValueError(f"Tweet content exceeds {TWEET_MAX_LENGTH} characters")

    response = await _request(
        "POST",
        TWITTER_TWEETS_URL,
        json={"text": text},
        headers={"Authorization": f"Bearer {access_token}"},
    )
    _raise_for_response(response)
    data = response.json().get("data") or {}
    twitter_logger.info(f"Tweet posted: {data.get('id')}")
    return {"id": str(data.get("id")), "text": data.get("text", text)}

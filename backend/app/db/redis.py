"""Redis client for sessions, OAuth state and caching"""
import hashlib
import json
import logging
import secrets
from typing import Optional, Dict
import redis
from app.core.config import settings, OAUTH_STATE_TTL

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60

# Rate limiting configuration
RATE_LIMIT_WINDOW = 60  # seconds
if settings.ENVIRONMENT == "production":
    RATE_LIMIT_REQUESTS = 300
    RATE_LIMIT_STRICT_REQUESTS = 60  # state-changing operations
else:
    RATE_LIMIT_REQUESTS = 1000
    RATE_LIMIT_STRICT_REQUESTS = 1000

# OAuth state entries outlive their validity window so that a late callback
# can be reported as expired rather than unknown
OAUTH_STATE_REDIS_TTL = OAUTH_STATE_TTL * 2

# Locally tracked Twitter credential validity
TOKEN_STATUS_TTL = 60  # seconds


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    get_redis_client().setex(f"session:{session_id}", SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None


def delete_session(session_id: str) -> None:
    """Delete session and its CSRF token"""
    get_redis_client().delete(f"session:{session_id}", f"csrf:{session_id}")


def set_csrf_token(session_id: str, token: str) -> None:
    """Store CSRF token in Redis"""
    get_redis_client().setex(f"csrf:{session_id}", SESSION_TTL, token)


def get_csrf_token(session_id: str) -> Optional[str]:
    """Get CSRF token from Redis"""
    return get_redis_client().get(f"csrf:{session_id}")


def get_or_create_csrf_token(session_id: str) -> str:
    """Get existing CSRF token or create new one if it doesn't exist"""
    csrf_token = get_csrf_token(session_id)
    if not csrf_token:
        csrf_token = secrets.token_urlsafe(32)
        set_csrf_token(session_id, csrf_token)
    return csrf_token


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment rate limit counter and return current count.
    Uses Lua script to atomically increment and set TTL only for new keys (fixed window rate limiting)."""
    key = f"ratelimit:{identifier}"
    lua_script = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('EXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """
    count = get_redis_client().eval(lua_script, 1, key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit. Returns True if allowed, False if rate limited."""
    max_requests = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS
    return increment_rate_limit(identifier, RATE_LIMIT_WINDOW) <= max_requests


# ---------------------------------------------------------------------------
# Twitter OAuth state (PKCE verifier keyed by state string)
# ---------------------------------------------------------------------------

def set_oauth_state(state: str, data: Dict) -> None:
    """Store PKCE verifier and owner for an authorization request"""
    get_redis_client().setex(f"twitter_oauth:{state}", OAUTH_STATE_REDIS_TTL, json.dumps(data))


def consume_oauth_state(state: str) -> Optional[Dict]:
    """Atomically read and delete an OAuth state, so each state is usable once"""
    key = f"twitter_oauth:{state}"
    pipe = get_redis_client().pipeline(transaction=True)
    pipe.get(key)
    pipe.delete(key)
    raw, _ = pipe.execute()
    return json.loads(raw) if raw else None


# ---------------------------------------------------------------------------
# AI suggestion cache
# ---------------------------------------------------------------------------

def _ai_cache_key(kind: str, text: str) -> str:
    digest = hashlib.sha256(f"{kind}:{text}".encode("utf-8")).hexdigest()
    return f"cache:ai:{kind}:{digest}"


def get_cached_ai_result(kind: str, text: str) -> Optional[Dict]:
    """Get cached AI result for identical input"""
    cached = get_redis_client().get(_ai_cache_key(kind, text))
    if cached:
        return json.loads(cached)
    return None


def set_cached_ai_result(kind: str, text: str, result: Dict) -> None:
    """Cache AI result with TTL"""
    get_redis_client().setex(_ai_cache_key(kind, text), settings.AI_CACHE_TTL, json.dumps(result))


# ---------------------------------------------------------------------------
# Twitter connection status cache
# ---------------------------------------------------------------------------

def get_cached_twitter_status(user_id: int) -> Optional[Dict]:
    """Get cached connection status for the dashboard widgets"""
    cached = get_redis_client().get(f"cache:twitter_status:{user_id}")
    if cached:
        return json.loads(cached)
    return None


def set_cached_twitter_status(user_id: int, status: Dict) -> None:
    """Cache connection status briefly"""
    get_redis_client().setex(f"cache:twitter_status:{user_id}", TOKEN_STATUS_TTL, json.dumps(status))


def invalidate_twitter_status_cache(user_id: int) -> None:
    """Invalidate cached connection status

    Gracefully handles Redis failures - cache invalidation should not break user operations.
    """
    try:
        get_redis_client().delete(f"cache:twitter_status:{user_id}")
    except Exception as e:
        logger.warning(f"Failed to invalidate Twitter status cache for user {user_id}: {e}")

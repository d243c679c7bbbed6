"""Database helper functions for tweets and Twitter credentials"""
from sqlalchemy import func, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
import logging
from datetime import datetime, timezone, timedelta

from app.core.config import TOKEN_REFRESH_THRESHOLD_HOURS
from app.core.exceptions import InvalidTransition
from app.models.user import User
from app.models.tweet import Tweet, TweetStatus, ALLOWED_TRANSITIONS
from app.models.ai_response import AIResponse
from app.models.twitter_token import TwitterToken
from app.db.session import SessionLocal
from app.utils.encryption import encrypt, decrypt
from app.db.redis import invalidate_twitter_status_cache

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive datetimes (SQLite drops tzinfo) to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _insert_for(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT"""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


# ============================================================================
# TWITTER CREDENTIALS
# ============================================================================

def get_twitter_tokens(user_id: int, db: Session = None) -> Optional[TwitterToken]:
    """Get the stored (encrypted) Twitter token row for a user"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(TwitterToken).filter(TwitterToken.user_id == user_id).first()
    finally:
        if should_close:
            db.close()


def decrypt_twitter_tokens(token: TwitterToken) -> Dict[str, Any]:
    """Return the plaintext credentials and identity of a token row

    Raises:
        ValueError: If the stored ciphertext cannot be decrypted
    """
    return {
        "access_token": decrypt(token.access_token),
        "refresh_token": decrypt(token.refresh_token) if token.refresh_token else None,
        "expires_at": as_utc(token.expires_at),
        "last_verified_at": as_utc(token.last_verified_at),
        "twitter_user_id": token.twitter_user_id,
        "twitter_username": token.twitter_username,
        "twitter_name": token.twitter_name,
    }


def save_twitter_tokens(user_id: int, access_token: str, refresh_token: Optional[str],
                        expires_at: Optional[datetime], twitter_user: Dict[str, Any],
                        db: Session = None) -> TwitterToken:
    """Insert or replace a user's Twitter credentials in one statement

    The row is keyed by user_id, so reconnecting or refreshing never leaves
    the user without a token row.

    Args:
        user_id: User ID
        access_token: Access token (will be encrypted)
        refresh_token: Refresh token (will be encrypted, optional)
        expires_at: Access token expiry reported by Twitter (optional)
        twitter_user: Dict with id, username, name
        db: Database session (if None, creates its own)
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = utcnow()
        values = {
            "access_token": encrypt(access_token),
            "refresh_token": encrypt(refresh_token) if refresh_token else None,
            "twitter_user_id": str(twitter_user["id"]),
            "twitter_username": twitter_user["username"],
            "twitter_name": twitter_user.get("name"),
            "expires_at": expires_at,
            "last_verified_at": now,
            "updated_at": now,
        }
        insert = _insert_for(db)
        stmt = insert(TwitterToken).values(user_id=user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        try:
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        invalidate_twitter_status_cache(user_id)
        return db.query(TwitterToken).filter(TwitterToken.user_id == user_id).first()
    finally:
        if should_close:
            db.close()


def mark_twitter_tokens_verified(user_id: int, db: Session = None) -> None:
    """Record a successful credential check"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        db.query(TwitterToken).filter(TwitterToken.user_id == user_id).update(
            {"last_verified_at": utcnow()}, synchronize_session=False
        )
        db.commit()
    finally:
        if should_close:
            db.close()


def delete_twitter_tokens(user_id: int, db: Session = None) -> bool:
    """Delete a user's Twitter credentials

    Returns:
        bool: True if a row was deleted
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        deleted = db.query(TwitterToken).filter(TwitterToken.user_id == user_id).delete(synchronize_session=False)
        db.commit()
        invalidate_twitter_status_cache(user_id)
        return deleted > 0
    finally:
        if should_close:
            db.close()


def check_token_expiration(token: Optional[TwitterToken]) -> Dict[str, Any]:
    """Check if a Twitter token is expired or about to expire

    Returns:
        Dict with:
            - expired: bool - True if token is expired
            - expires_soon: bool - True if token expires within the refresh threshold
            - expires_at: Optional[datetime] - Expiration time
            - status: str - 'valid', 'expires_soon', 'expired' or 'unknown'
    """
    if not token:
        return {"expired": True, "expires_soon": False, "expires_at": None, "status": "expired"}

    expires_at = as_utc(token.expires_at)
    if expires_at is None:
        return {"expired": False, "expires_soon": False, "expires_at": None, "status": "unknown"}

    now = utcnow()
    if expires_at <= now:
        return {"expired": True, "expires_soon": False, "expires_at": expires_at, "status": "expired"}
    if expires_at - now <= timedelta(hours=TOKEN_REFRESH_THRESHOLD_HOURS):
        return {"expired": False, "expires_soon": True, "expires_at": expires_at, "status": "expires_soon"}
    return {"expired": False, "expires_soon": False, "expires_at": expires_at, "status": "valid"}


# ============================================================================
# USER TWITTER IDENTITY
# ============================================================================

def update_user_twitter_info(user_id: int, twitter_user: Dict[str, Any], db: Session) -> None:
    """Copy the connected Twitter identity onto the user row"""
    db.query(User).filter(User.id == user_id).update({
        "twitter_user_id": str(twitter_user["id"]),
        "twitter_username": twitter_user["username"],
        "twitter_name": twitter_user.get("name"),
        "updated_at": utcnow(),
    }, synchronize_session=False)
    db.commit()


def clear_user_twitter_info(user_id: int, db: Session) -> None:
    """Remove the cached Twitter identity from the user row"""
    db.query(User).filter(User.id == user_id).update({
        "twitter_user_id": None,
        "twitter_username": None,
        "twitter_name": None,
        "updated_at": utcnow(),
    }, synchronize_session=False)
    db.commit()


def get_user_twitter_info(user_id: int, db: Session) -> Optional[Dict[str, Any]]:
    user = db.query(User).filter(User.id == user_id, User.twitter_user_id.isnot(None)).first()
    if not user:
        return None
    return {
        "twitterUserId": user.twitter_user_id,
        "twitterUsername": user.twitter_username,
        "twitterName": user.twitter_name,
        "updatedAt": as_utc(user.updated_at).isoformat() if user.updated_at else None,
    }


# ============================================================================
# TWEETS
# ============================================================================

def create_tweet(user_id: int, content: str, status: str = TweetStatus.DRAFT.value,
                 scheduled_for: Optional[datetime] = None, db: Session = None) -> Tweet:
    """Create a tweet for a user"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        status = TweetStatus(status)
        if status == TweetStatus.SCHEDULED and scheduled_for is None:
            raise ValueError("Scheduled tweets require a scheduled time")
        if status == TweetStatus.SENT:
            raise InvalidTransition(None, status.value)
        tweet = Tweet(
            user_id=user_id,
            content=content,
            status=status.value,
            scheduled_for=scheduled_for if status == TweetStatus.SCHEDULED else None,
        )
        db.add(tweet)
        db.commit()
        db.refresh(tweet)
        return tweet
    finally:
        if should_close:
            db.close()


def create_sent_tweet(user_id: int, content: str, twitter_tweet_id: str, db: Session) -> Tweet:
    """Record a tweet that was posted without a prior draft"""
    tweet = Tweet(
        user_id=user_id,
        content=content,
        status=TweetStatus.SENT.value,
        tweet_id=str(twitter_tweet_id),
        sent_at=utcnow(),
    )
    db.add(tweet)
    db.commit()
    db.refresh(tweet)
    return tweet


def get_user_tweet(tweet_id: int, user_id: int, db: Session) -> Optional[Tweet]:
    """Get a tweet only if it belongs to the user"""
    return db.query(Tweet).filter(Tweet.id == tweet_id, Tweet.user_id == user_id).first()


def get_user_tweets(user_id: int, db: Session, status: Optional[str] = None) -> List[Tweet]:
    query = db.query(Tweet).filter(Tweet.user_id == user_id)
    if status:
        query = query.filter(Tweet.status == status)
    return query.order_by(Tweet.created_at.desc(), Tweet.id.desc()).all()


def delete_tweet(tweet_id: int, user_id: int, db: Session, status: Optional[str] = None) -> bool:
    """Delete a tweet owned by the user (optionally only in a given status)"""
    query = db.query(Tweet).filter(Tweet.id == tweet_id, Tweet.user_id == user_id)
    if status:
        query = query.filter(Tweet.status == status)
    deleted = query.delete(synchronize_session=False)
    db.commit()
    return deleted > 0


def _fields_for_status(target: TweetStatus, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Dependent columns that must change together with the status"""
    values = {}
    if "content" in fields and fields["content"] is not None:
        values["content"] = fields["content"]

    if target in (TweetStatus.DRAFT, TweetStatus.COMPLETED):
        values.update({"scheduled_for": None, "error_message": None})
    elif target == TweetStatus.SCHEDULED:
        if fields.get("scheduled_for") is None:
            raise ValueError("Scheduled tweets require a scheduled time")
        values.update({"scheduled_for": fields["scheduled_for"], "error_message": None})
    elif target == TweetStatus.SENT:
        if not fields.get("twitter_tweet_id"):
            raise ValueError("Sent tweets require the Twitter tweet ID")
        values.update({
            "tweet_id": str(fields["twitter_tweet_id"]),
            "sent_at": fields.get("sent_at") or utcnow(),
            "scheduled_for": None,
            "error_message": None,
        })
    return values


def transition_tweet(tweet_id: int, user_id: int, target: str, db: Session,
                     **fields) -> Optional[Tweet]:
    """Move a tweet to a new status together with its dependent fields

    The status guard and the field updates run as one UPDATE inside one
    transaction, so concurrent requests cannot interleave a read-then-write.

    Returns:
        The updated tweet, or None if no tweet with this ID belongs to the user

    Raises:
        InvalidTransition: If the tweet's current status does not permit the change
    """
    target = TweetStatus(target)
    allowed_from = [s.value for s in ALLOWED_TRANSITIONS[target]]
    values = _fields_for_status(target, fields)
    values["status"] = target.value
    values["updated_at"] = utcnow()

    try:
        updated = db.query(Tweet).filter(
            Tweet.id == tweet_id,
            Tweet.user_id == user_id,
            Tweet.status.in_(allowed_from)
        ).update(values, synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    if not updated:
        current = db.query(Tweet.status).filter(Tweet.id == tweet_id, Tweet.user_id == user_id).scalar()
        if current is None:
            return None
        raise InvalidTransition(current, target.value)

    tweet = get_user_tweet(tweet_id, user_id, db)
    db.refresh(tweet)
    return tweet


def mark_tweet_error(tweet_id: int, user_id: int, error_message: str, db: Session) -> Optional[Tweet]:
    """Record a posting failure without changing the status"""
    updated = db.query(Tweet).filter(
        Tweet.id == tweet_id,
        Tweet.user_id == user_id,
        Tweet.status != TweetStatus.SENT.value
    ).update({"error_message": error_message[:1000], "updated_at": utcnow()}, synchronize_session=False)
    db.commit()
    if not updated:
        return None
    return get_user_tweet(tweet_id, user_id, db)


def update_scheduled_time(tweet_id: int, user_id: int, scheduled_for: datetime,
                          db: Session, content: Optional[str] = None) -> Optional[Tweet]:
    """Reschedule a tweet that is currently scheduled"""
    tweet = get_user_tweet(tweet_id, user_id, db)
    if not tweet or tweet.status != TweetStatus.SCHEDULED.value:
        return None
    return transition_tweet(tweet_id, user_id, TweetStatus.SCHEDULED.value, db,
                            scheduled_for=scheduled_for, content=content)


def cancel_scheduled_tweet(tweet_id: int, user_id: int, db: Session) -> Optional[Tweet]:
    """Turn a scheduled tweet back into a draft"""
    tweet = get_user_tweet(tweet_id, user_id, db)
    if not tweet or tweet.status != TweetStatus.SCHEDULED.value:
        return None
    return transition_tweet(tweet_id, user_id, TweetStatus.DRAFT.value, db)


def retry_failed_tweet(tweet_id: int, user_id: int, db: Session,
                       scheduled_for: Optional[datetime] = None) -> Optional[Tweet]:
    """Clear a posting error and queue the tweet again"""
    tweet = get_user_tweet(tweet_id, user_id, db)
    if not tweet or not tweet.error_message:
        return None
    return transition_tweet(tweet_id, user_id, TweetStatus.SCHEDULED.value, db,
                            scheduled_for=scheduled_for or utcnow())


def convert_scheduled_tweets_to_drafts(user_id: int, db: Session) -> int:
    """Revert every scheduled tweet of a user to draft

    Returns:
        int: Number of tweets converted
    """
    converted = db.query(Tweet).filter(
        Tweet.user_id == user_id,
        Tweet.status == TweetStatus.SCHEDULED.value
    ).update({
        "status": TweetStatus.DRAFT.value,
        "scheduled_for": None,
        "updated_at": utcnow(),
    }, synchronize_session=False)
    db.commit()
    return converted


def get_scheduled_tweets_due(db: Session, limit: int = 50) -> List[Tweet]:
    """Scheduled tweets whose time has come and that have not failed"""
    return db.query(Tweet).filter(
        Tweet.status == TweetStatus.SCHEDULED.value,
        Tweet.scheduled_for <= utcnow(),
        Tweet.error_message.is_(None)
    ).order_by(Tweet.scheduled_for.asc()).limit(limit).all()


def get_scheduled_tweets(user_id: int, db: Session, limit: int = 50, offset: int = 0,
                         include_expired: bool = False) -> List[Tweet]:
    query = db.query(Tweet).filter(
        Tweet.user_id == user_id,
        Tweet.status == TweetStatus.SCHEDULED.value
    )
    if not include_expired:
        query = query.filter(Tweet.scheduled_for > utcnow())
    return query.order_by(Tweet.scheduled_for.asc()).offset(offset).limit(limit).all()


def get_sent_tweets(user_id: int, db: Session, limit: int = 50, offset: int = 0) -> List[Tweet]:
    return db.query(Tweet).filter(
        Tweet.user_id == user_id,
        Tweet.status == TweetStatus.SENT.value
    ).order_by(Tweet.sent_at.desc()).offset(offset).limit(limit).all()


def get_failed_tweets(user_id: int, db: Session, limit: int = 50, offset: int = 0) -> List[Tweet]:
    return db.query(Tweet).filter(
        Tweet.user_id == user_id,
        Tweet.error_message.isnot(None)
    ).order_by(Tweet.updated_at.desc()).offset(offset).limit(limit).all()


def get_upcoming_scheduled(user_id: int, db: Session, limit: int = 10) -> List[Tweet]:
    """Scheduled tweets going out within the next 24 hours"""
    now = utcnow()
    return db.query(Tweet).filter(
        Tweet.user_id == user_id,
        Tweet.status == TweetStatus.SCHEDULED.value,
        Tweet.scheduled_for > now,
        Tweet.scheduled_for <= now + timedelta(hours=24)
    ).order_by(Tweet.scheduled_for.asc()).limit(limit).all()


def count_scheduled_tweets(user_id: int, db: Session) -> int:
    return db.query(func.count(Tweet.id)).filter(
        Tweet.user_id == user_id,
        Tweet.status == TweetStatus.SCHEDULED.value
    ).scalar() or 0


def get_twitter_stats(user_id: int, db: Session) -> Dict[str, int]:
    """Posting counters for a user"""
    row = db.query(
        func.sum(case((Tweet.status == TweetStatus.SCHEDULED.value, 1), else_=0)),
        func.sum(case((Tweet.status == TweetStatus.SENT.value, 1), else_=0)),
        func.sum(case((Tweet.error_message.isnot(None), 1), else_=0)),
    ).filter(Tweet.user_id == user_id).one()
    scheduled, sent, failed = (int(v or 0) for v in row)
    return {
        "scheduled": scheduled,
        "sent": sent,
        "failed": failed,
        "totalScheduled": scheduled + sent,
    }


# ============================================================================
# AI RESPONSES
# ============================================================================

def save_ai_response(tweet_id: int, response_type: str, request_hash: str,
                     response_data: Dict[str, Any], db: Session) -> None:
    """Record an AI result against a tweet, replacing any row with the same hash"""
    insert = _insert_for(db)
    stmt = insert(AIResponse).values(
        tweet_id=tweet_id,
        type=response_type,
        request_hash=request_hash,
        response_data=response_data,
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["request_hash"],
        set_={"response_data": response_data, "tweet_id": tweet_id},
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

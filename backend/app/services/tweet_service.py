"""Tweet service - composer drafts, posting and scheduling records"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import TWEET_MAX_LENGTH, MAX_SCHEDULE_AHEAD_DAYS
from app.core.exceptions import InvalidTransition, NotConnected, TwitterAPIError
from app.core.metrics import tweets_posted_counter
from app.db.helpers import (
    create_tweet, create_sent_tweet, get_user_tweet, get_user_tweets, delete_tweet,
    transition_tweet, mark_tweet_error, update_scheduled_time, cancel_scheduled_tweet, retry_failed_tweet,
    get_scheduled_tweets, get_upcoming_scheduled, get_failed_tweets, get_sent_tweets,
    get_twitter_stats, as_utc, utcnow
)
from app.models.tweet import Tweet, TweetStatus, COMPOSER_STATUSES
from app.services import twitter_client, twitter_service

logger = logging.getLogger(__name__)
twitter_logger = logging.getLogger("twitter")

NOT_FOUND_MESSAGE = "Tweet not found or access denied"
SCHEDULED_NOT_FOUND_MESSAGE = "Scheduled tweet not found or access denied"


def validate_content(content: Optional[str]) -> str:
    """Trim and length-check tweet text

    Raises:
        ValueError: Empty or longer than 280 characters
    """
    content = (content or "").strip()
    if not content:
        raise ValueError("Tweet content cannot be empty")
    if len(content) > TWEET_MAX_LENGTH:
        raise ValueError(f"Tweet content cannot exceed {TWEET_MAX_LENGTH} characters")
    return content


def validate_schedule_time(scheduled_for: datetime, now: Optional[datetime] = None) -> datetime:
    """Normalize a schedule time to UTC and check it is within the next year

    Naive datetimes are taken as UTC.

    Raises:
        ValueError: In the past, or more than a year ahead
    """
    now = now or utcnow()
    scheduled_for = as_utc(scheduled_for)
    if scheduled_for <= now:
        raise ValueError("Scheduled time must be in the future")
    if scheduled_for > now + timedelta(days=MAX_SCHEDULE_AHEAD_DAYS):
        raise ValueError("Scheduled time cannot be more than 1 year in the future")
    return scheduled_for


def _pagination(items: List[Any], limit: int, offset: int) -> Dict[str, Any]:
    return {"limit": limit, "offset": offset, "hasMore": len(items) == limit}


# ============================================================================
# COMPOSER
# ============================================================================

def list_tweets(user_id: int, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
    return [t.to_dict() for t in get_user_tweets(user_id, db, status=status)]


def save_tweet(user_id: int, content: str, db: Session, status: str = TweetStatus.DRAFT.value,
               tweet_id: Optional[int] = None) -> Dict[str, Any]:
    """Create a draft/completed tweet, or update an existing one

    Raises:
        ValueError: Invalid content or status, or the tweet is not the user's
        InvalidTransition: The existing tweet cannot move to the requested status
    """
    content = validate_content(content)
    status = TweetStatus(status)
    if status not in COMPOSER_STATUSES:
        raise ValueError("Status must be 'draft' or 'completed'")

    if tweet_id is None:
        tweet = create_tweet(user_id, content, status=status.value, db=db)
    else:
        tweet = transition_tweet(tweet_id, user_id, status.value, db, content=content)
        if tweet is None:
            raise ValueError(NOT_FOUND_MESSAGE)
    return tweet.to_dict()


def remove_tweet(user_id: int, tweet_id: int, db: Session) -> None:
    if not delete_tweet(tweet_id, user_id, db):
        raise ValueError(NOT_FOUND_MESSAGE)


# ============================================================================
# POSTING
# ============================================================================

async def post_tweet(user_id: int, content: str, db: Session,
                     tweet_id: Optional[int] = None) -> Dict[str, Any]:
    """Post to Twitter now and record the tweet as sent

    Args:
        user_id: Posting user
        content: Tweet text
        db: Database session
        tweet_id: Existing draft/completed/scheduled tweet to mark sent; a new
            record is created when omitted

    Raises:
        NotConnected: No usable Twitter credentials
        TwitterAPIError: Twitter refused the tweet; for failures other than
            duplicates and rate limits the error is recorded on the tweet
        ValueError: Invalid content or unknown tweet
    """
    content = validate_content(content)

    if tweet_id is not None:
        existing = get_user_tweet(tweet_id, user_id, db)
        if not existing:
            raise ValueError(NOT_FOUND_MESSAGE)
        if existing.status == TweetStatus.SENT.value:
            raise InvalidTransition(existing.status, TweetStatus.SENT.value)

    tokens = await twitter_service.get_valid_tokens(user_id, db)
    if not tokens:
        raise NotConnected("Twitter account not connected")

    try:
        posted = await twitter_client.post_tweet(tokens["access_token"], content)
    except TwitterAPIError as e:
        tweets_posted_counter.labels(status=e.kind).inc()
        twitter_logger.warning(f"Posting tweet for user {user_id} failed ({e.kind}): {e}")
        if tweet_id is not None and e.kind not in ("duplicate", "rate_limit"):
            mark_tweet_error(tweet_id, user_id, str(e), db)
        raise

    if tweet_id is not None:
        tweet = transition_tweet(
            tweet_id, user_id, TweetStatus.SENT.value, db,
            content=content, twitter_tweet_id=posted["id"]
        )
    else:
        tweet = create_sent_tweet(user_id, content, posted["id"], db)

    tweets_posted_counter.labels(status="success").inc()
    twitter_logger.info(f"User {user_id} posted tweet {posted['id']} (db id {tweet.id})")
    return {
        "tweetId": posted["id"],
        "text": posted["text"],
        "dbTweetId": tweet.id,
        "sentAt": tweet.to_dict()["sentAt"],
    }


def list_sent_tweets(user_id: int, db: Session, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
    tweets = get_sent_tweets(user_id, db, limit=limit, offset=offset)
    return {"tweets": [t.to_dict() for t in tweets], "pagination": _pagination(tweets, limit, offset)}


# ============================================================================
# SCHEDULING
# ============================================================================

def _schedule_payload(tweet: Tweet) -> Dict[str, Any]:
    data = tweet.to_dict()
    return {
        "dbTweetId": data["id"],
        "content": data["content"],
        "scheduledFor": data["scheduledFor"],
        "status": data["status"],
    }


async def schedule_tweet(user_id: int, content: str, scheduled_for: datetime, db: Session,
                         tweet_id: Optional[int] = None) -> Dict[str, Any]:
    """Record a tweet as scheduled for a future time

    Raises:
        NotConnected: No usable Twitter credentials
        ValueError: Invalid content or time, or unknown tweet
        InvalidTransition: The tweet was already sent
    """
    content = validate_content(content)
    scheduled_for = validate_schedule_time(scheduled_for)

    tokens = await twitter_service.get_valid_tokens(user_id, db)
    if not tokens:
        raise NotConnected("Twitter account not connected")

    if tweet_id is None:
        tweet = create_tweet(user_id, content, status=TweetStatus.SCHEDULED.value,
                             scheduled_for=scheduled_for, db=db)
    else:
        tweet = transition_tweet(tweet_id, user_id, TweetStatus.SCHEDULED.value, db,
                                 content=content, scheduled_for=scheduled_for)
        if tweet is None:
            raise ValueError(NOT_FOUND_MESSAGE)

    logger.info(f"User {user_id} scheduled tweet {tweet.id} for {scheduled_for.isoformat()}")
    return _schedule_payload(tweet)


def update_schedule(user_id: int, tweet_id: int, db: Session, action: str = "update",
                    content: Optional[str] = None,
                    scheduled_for: Optional[datetime] = None) -> Dict[str, Any]:
    """Reschedule/edit a scheduled tweet, cancel it back to a draft, or re-queue a failed one"""
    if action == "cancel":
        tweet = cancel_scheduled_tweet(tweet_id, user_id, db)
        if tweet is None:
            raise ValueError(SCHEDULED_NOT_FOUND_MESSAGE)
        logger.info(f"User {user_id} cancelled scheduled tweet {tweet_id}")
        return {"dbTweetId": tweet.id, "content": tweet.content, "status": tweet.status}

    if action == "retry":
        if scheduled_for is not None:
            scheduled_for = validate_schedule_time(scheduled_for)
        tweet = retry_failed_tweet(tweet_id, user_id, db, scheduled_for=scheduled_for)
        if tweet is None:
            raise ValueError(SCHEDULED_NOT_FOUND_MESSAGE)
        logger.info(f"User {user_id} re-queued failed tweet {tweet_id}")
        return _schedule_payload(tweet)

    if content is not None:
        content = validate_content(content)
    if scheduled_for is not None:
        scheduled_for = validate_schedule_time(scheduled_for)

    existing = get_user_tweet(tweet_id, user_id, db)
    if not existing or existing.status != TweetStatus.SCHEDULED.value:
        raise ValueError(SCHEDULED_NOT_FOUND_MESSAGE)

    tweet = update_scheduled_time(
        tweet_id, user_id, scheduled_for or as_utc(existing.scheduled_for), db, content=content
    )
    if tweet is None:
        raise ValueError(SCHEDULED_NOT_FOUND_MESSAGE)
    return _schedule_payload(tweet)


def delete_scheduled_tweet(user_id: int, tweet_id: int, db: Session) -> None:
    if not delete_tweet(tweet_id, user_id, db, status=TweetStatus.SCHEDULED.value):
        raise ValueError(SCHEDULED_NOT_FOUND_MESSAGE)


def list_scheduled_tweets(user_id: int, db: Session, limit: int = 10, offset: int = 0,
                          include_expired: bool = False, view: str = "scheduled") -> Dict[str, Any]:
    """Scheduled tweets; view "upcoming" narrows to the next 24 hours, "failed" lists posting errors"""
    if view == "upcoming":
        tweets = get_upcoming_scheduled(user_id, db, limit=limit)
    elif view == "failed":
        tweets = get_failed_tweets(user_id, db, limit=limit, offset=offset)
    else:
        tweets = get_scheduled_tweets(user_id, db, limit=limit, offset=offset, include_expired=include_expired)
    return {"tweets": [t.to_dict() for t in tweets], "pagination": _pagination(tweets, limit, offset)}


def get_stats(user_id: int, db: Session) -> Dict[str, int]:
    return get_twitter_stats(user_id, db)


async def dispatch_scheduled_tweet(tweet: Tweet, db: Session) -> bool:
    """Post one due scheduled tweet on behalf of its owner

    Returns:
        bool: True if posted; on failure the error is recorded on the tweet
    """
    try:
        await post_tweet(tweet.user_id, tweet.content, db, tweet_id=tweet.id)
        return True
    except NotConnected:
        mark_tweet_error(tweet.id, tweet.user_id, "Twitter account not connected", db)
    except TwitterAPIError as e:
        # rate-limited tweets stay due and are retried on the next pass
        if e.kind == "duplicate":
            mark_tweet_error(tweet.id, tweet.user_id, str(e), db)
    except ValueError as e:
        mark_tweet_error(tweet.id, tweet.user_id, str(e), db)
    return False

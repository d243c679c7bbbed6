"""Background dispatcher that posts scheduled tweets once they are due"""
import asyncio
import logging

from app.core.config import settings
from app.core.metrics import scheduler_runs_counter
from app.db.helpers import get_scheduled_tweets_due, mark_tweet_error
from app.db.session import SessionLocal
from app.services.tweet_service import dispatch_scheduled_tweet

scheduler_logger = logging.getLogger("scheduler")


async def post_due_tweets() -> dict:
    """Run one dispatch pass over due scheduled tweets

    Returns:
        dict with counts of posted and failed tweets
    """
    db = SessionLocal()
    posted = failed = 0
    try:
        due = get_scheduled_tweets_due(db)
        for tweet in due:
            tweet_id, user_id = tweet.id, tweet.user_id
            try:
                ok = await dispatch_scheduled_tweet(tweet, db)
            except Exception as e:
                scheduler_logger.error(
                    f"Dispatch failed for scheduled tweet {tweet_id} (user {user_id}): {type(e).__name__}: {e}",
                    exc_info=True
                )
                db.rollback()
                mark_tweet_error(tweet_id, user_id, f"Posting failed: {e}", db)
                ok = False

            if ok:
                posted += 1
            else:
                failed += 1
    finally:
        db.close()

    if posted or failed:
        scheduler_logger.info(f"Scheduled tweet pass: {posted} posted, {failed} failed")
    return {"posted": posted, "failed": failed}


async def scheduler_task():
    """Poll for due scheduled tweets every SCHEDULER_INTERVAL_SECONDS"""
    scheduler_logger.info(f"Scheduled tweet dispatcher running every {settings.SCHEDULER_INTERVAL_SECONDS}s")
    while True:
        try:
            await asyncio.sleep(settings.SCHEDULER_INTERVAL_SECONDS)
            await post_due_tweets()
            scheduler_runs_counter.labels(status="success").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(status="error").inc()
            scheduler_logger.error(f"Scheduler task error: {e}", exc_info=True)

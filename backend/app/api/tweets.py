"""Composer tweet routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.exceptions import APIError, InvalidTransition
from app.core.security import require_auth, require_csrf_new
from app.db.session import get_db
from app.schemas.tweets import SaveTweetRequest
from app.services import tweet_service

router = APIRouter(prefix="/api/tweets", tags=["tweets"])
logger = logging.getLogger(__name__)


@router.get("")
def list_tweets(
    status: Optional[str] = Query(None, pattern="^(draft|completed|scheduled|sent)$"),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """List the user's tweets, newest first"""
    return {"success": True, "tweets": tweet_service.list_tweets(user_id, db, status=status)}


@router.post("")
def save_tweet(
    request_data: SaveTweetRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Create a draft, or update an existing tweet when id is given"""
    try:
        tweet = tweet_service.save_tweet(
            user_id, request_data.content, db,
            status=request_data.status, tweet_id=request_data.id
        )
    except InvalidTransition as e:
        raise APIError(409, str(e), "INVALID_TRANSITION")
    except ValueError as e:
        error_msg = str(e)
        if "not found" in error_msg:
            raise APIError(404, error_msg, "NOT_FOUND")
        raise APIError(400, error_msg, "VALIDATION_ERROR")
    return {"success": True, "tweet": tweet}


@router.delete("")
def delete_tweet(
    id: int = Query(...),
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Delete one of the user's tweets"""
    try:
        tweet_service.remove_tweet(user_id, id, db)
    except ValueError as e:
        raise APIError(404, str(e), "NOT_FOUND")
    return {"success": True, "message": "Tweet deleted successfully"}

"""AI suggestion routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.exceptions import APIError, TweetNotFound
from app.core.security import require_csrf_new
from app.db.session import get_db
from app.schemas.ai import TextCheckRequest, CritiqueRequest
from app.services import ai_service

router = APIRouter(prefix="/api/ai", tags=["ai"])
ai_logger = logging.getLogger("ai")


def _raise_for(e: ValueError, error: str, code: str):
    if isinstance(e, TweetNotFound):
        raise APIError(404, str(e), "NOT_FOUND")
    ai_logger.error(f"{code}: {type(e).__name__}: {e}")
    raise APIError(500, error, code)


@router.post("/spell-check")
async def spell_check(
    request_data: TextCheckRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Spelling suggestions for a piece of text"""
    try:
        result = await ai_service.spell_check(request_data.text, user_id, request_data.tweet_id, db)
    except ValueError as e:
        _raise_for(e, "An error occurred during spell check.", "SPELL_CHECK_ERROR")
    return {"success": True, **result}


@router.post("/writing-check")
async def writing_check(
    request_data: TextCheckRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Spelling and grammar suggestions for a piece of text"""
    try:
        result = await ai_service.writing_check(request_data.text, user_id, request_data.tweet_id, db)
    except ValueError as e:
        _raise_for(e, "An error occurred during writing check.", "WRITING_CHECK_ERROR")
    return {"success": True, **result}


@router.post("/critique")
async def critique(
    request_data: CritiqueRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Engagement critique of a tweet"""
    try:
        result = await ai_service.critique(request_data.content, user_id, request_data.tweet_id, db)
    except ValueError as e:
        _raise_for(e, "An error occurred during tweet analysis.", "CRITIQUE_ERROR")
    return {"success": True, **result}

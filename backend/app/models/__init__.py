"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.tweet import Tweet, TweetStatus
from app.models.ai_response import AIResponse
from app.models.twitter_token import TwitterToken

__all__ = ["Base", "User", "Tweet", "TweetStatus", "AIResponse", "TwitterToken"]

"""Tweet model and its status state machine"""
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class TweetStatus(str, enum.Enum):
    """Lifecycle of a tweet, from composer draft to posted"""
    DRAFT = "draft"
    COMPLETED = "completed"
    SCHEDULED = "scheduled"
    SENT = "sent"


# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS = {
    TweetStatus.DRAFT: {TweetStatus.DRAFT, TweetStatus.COMPLETED, TweetStatus.SCHEDULED},
    TweetStatus.COMPLETED: {TweetStatus.DRAFT, TweetStatus.COMPLETED},
    TweetStatus.SCHEDULED: {TweetStatus.DRAFT, TweetStatus.COMPLETED, TweetStatus.SCHEDULED},
    TweetStatus.SENT: {TweetStatus.DRAFT, TweetStatus.COMPLETED, TweetStatus.SCHEDULED},
}

# Statuses editable through the composer endpoint
COMPOSER_STATUSES = {TweetStatus.DRAFT, TweetStatus.COMPLETED}


def can_transition(current, target) -> bool:
    """True if a tweet in `current` status may move to `target`"""
    return TweetStatus(current) in ALLOWED_TRANSITIONS[TweetStatus(target)]


class Tweet(Base):
    """Composed tweets (drafts, scheduled and posted)"""
    __tablename__ = "tweets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    status = Column(String(20), default=TweetStatus.DRAFT.value, nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    tweet_id = Column(String(64), nullable=True)  # ID assigned by Twitter once posted
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="tweets")
    ai_responses = relationship("AIResponse", back_populates="tweet", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'completed', 'scheduled', 'sent')", name="ck_tweets_status"),
        Index('ix_tweets_user_status', 'user_id', 'status'),
        Index('ix_tweets_status_scheduled_for', 'status', 'scheduled_for'),
        Index('ix_tweets_tweet_id', 'tweet_id'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "content": self.content,
            "status": self.status,
            "scheduledFor": _iso(self.scheduled_for),
            "tweetId": self.tweet_id,
            "sentAt": _iso(self.sent_at),
            "errorMessage": self.error_message,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops tzinfo; stored values are always UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()

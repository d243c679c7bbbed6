"""AIResponse model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class AIResponse(Base):
    """AI suggestion results recorded against a tweet"""
    __tablename__ = "ai_responses"

    id = Column(Integer, primary_key=True, index=True)
    tweet_id = Column(Integer, ForeignKey("tweets.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False, index=True)  # spelling, grammar, critique, curation
    request_hash = Column(String(255), unique=True, nullable=False, index=True)
    response_data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    tweet = relationship("Tweet", back_populates="ai_responses")

    __table_args__ = (
        CheckConstraint("type IN ('spelling', 'grammar', 'critique', 'curation')", name="ck_ai_responses_type"),
    )

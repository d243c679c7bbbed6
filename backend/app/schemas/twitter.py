"""Pydantic schemas for Twitter posting and scheduling"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class PostTweetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    tweet_id: Optional[int] = Field(None, alias="tweetId")


class ScheduleTweetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    scheduled_for: datetime = Field(..., alias="scheduledFor")
    tweet_id: Optional[int] = Field(None, alias="tweetId")


class UpdateScheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tweet_id: int = Field(..., alias="tweetId")
    action: Literal["update", "cancel", "retry"] = "update"
    content: Optional[str] = None
    scheduled_for: Optional[datetime] = Field(None, alias="scheduledFor")

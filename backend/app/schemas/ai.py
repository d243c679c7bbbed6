"""Pydantic schemas for AI suggestion checks"""
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import AI_INPUT_MAX_LENGTH


class TextCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1, max_length=AI_INPUT_MAX_LENGTH)
    tweet_id: Optional[int] = Field(None, alias="tweetId")


class CritiqueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(..., min_length=1, max_length=AI_INPUT_MAX_LENGTH)
    tweet_id: Optional[int] = Field(None, alias="tweetId")

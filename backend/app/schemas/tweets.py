"""Pydantic schemas for composer tweets"""
from typing import Literal, Optional
from pydantic import BaseModel


class SaveTweetRequest(BaseModel):
    content: str
    status: Literal["draft", "completed"] = "draft"
    id: Optional[int] = None

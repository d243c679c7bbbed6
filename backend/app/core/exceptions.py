"""Exception types shared by services and routes

Services raise ValueError subclasses; routes translate them to HTTP statuses.
"""
from typing import Optional

from fastapi import HTTPException


class APIError(HTTPException):
    """HTTPException carrying a machine-readable error code"""

    def __init__(self, status_code: int, error: str, code: Optional[str] = None):
        super().__init__(status_code=status_code, detail=error)
        self.code = code


class TwitterError(ValueError):
    """Base class for Twitter integration failures"""


class InvalidState(TwitterError):
    """OAuth state missing, already consumed, or owned by another user"""


class ExpiredState(TwitterError):
    """OAuth state older than its time-to-live"""


class TokenRefreshFailed(TwitterError):
    """Refresh token exchange was rejected"""


class TokensRevoked(TwitterError):
    """Stored credentials are no longer usable and were removed"""


class NotConnected(TwitterError):
    """User has no usable Twitter credentials"""


class TwitterAPIError(TwitterError):
    """Error returned by the Twitter REST API

    kind is one of: duplicate, rate_limit, auth_error, api_error, unknown
    """

    def __init__(self, message: str, kind: str = "unknown", status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class AIServiceError(ValueError):
    """The completion API failed or returned nothing"""


class TweetNotFound(ValueError):
    """The referenced tweet does not exist or belongs to another user"""


class InvalidTransition(ValueError):
    """Tweet status change not permitted from its current status"""

    def __init__(self, current: Optional[str], target: str):
        super().__init__(f"Cannot change tweet status from {current} to {target}")
        self.current = current
        self.target = target

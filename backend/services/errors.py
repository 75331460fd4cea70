"""
Sales CRM - Error taxonomy

Every service raises one of these. The HTTP layer maps `http_status` to the
response code; nothing here knows about FastAPI.

Retry policy:
- NotFound / Unauthorized / InvalidArgument: never retried
- StorageError on a read: the caller may retry with backoff
- StorageError on a write: surfaced immediately
- PartialFailureError: retry only the failed `step`
"""

import functools
import logging
from datetime import datetime
from typing import Any, Optional

from pymongo.errors import PyMongoError

from config import is_past

logger = logging.getLogger("errors")


class CRMError(Exception):
    """Base class for every domain error"""
    http_status = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.message}


class NotFoundError(CRMError):
    http_status = 404


class UnauthorizedError(CRMError):
    http_status = 403


class InvalidArgumentError(CRMError):
    http_status = 400


class NoEligibleAssigneeError(CRMError):
    http_status = 409


class NoChannelAvailableError(CRMError):
    http_status = 409


class ChannelLimitReachedError(NoChannelAvailableError):
    """Conditional increment lost the race for the last unit of quota"""


class ConflictError(CRMError):
    """Optimistic update kept losing against concurrent writers"""
    http_status = 409


class ConfigurationError(CRMError):
    http_status = 500


class StorageError(CRMError):
    http_status = 503


class DeadlineExceededError(CRMError):
    http_status = 504


class PartialFailureError(CRMError):
    """
    The primary mutation is committed, a dependent step failed.

    `step` names the failed sub-step (activity, schedule, notification...),
    `entity` carries the committed document so the caller can retry the
    step alone.
    """
    http_status = 500

    def __init__(self, message: str, step: str, entity: Any = None, cause: Optional[Exception] = None):
        super().__init__(message, step=step)
        self.step = step
        self.entity = entity
        self.cause = cause

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["step"] = self.step
        return data


def check_deadline(deadline: Optional[datetime], operation: str):
    """Abort before any mutation when the caller's deadline has passed."""
    if is_past(deadline):
        raise DeadlineExceededError(f"{operation}: deadline exceeded before mutation")


def storage_errors(operation: str):
    """Translate driver errors raised inside a coroutine into StorageError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except PyMongoError as e:
                logger.error(f"[STORAGE] {operation} failed: {e}")
                raise StorageError(f"{operation}: store unavailable ({e})") from e
        return wrapper
    return decorator

"""Subscription error taxonomy.

Only structural failures raise. "Not entitled" is never an exception: the
entitlement engine returns a denial decision instead.

Each error carries a stable error_code and the HTTP status the API layer
renders it with (see server.py exception handler).
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from pymongo.errors import PyMongoError
import logging

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Base class for subscription domain errors."""
    error_code = "SUBSCRIPTION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(SubscriptionError):
    """User, plan, subscription or change request does not exist."""
    error_code = "NOT_FOUND"
    status_code = 404


class ValidationError(SubscriptionError):
    """Malformed plan or request payload."""
    error_code = "VALIDATION_ERROR"
    status_code = 400


class DuplicateRequestError(SubscriptionError):
    """User already has a pending change request."""
    error_code = "DUPLICATE_REQUEST"
    status_code = 409


class RequestAlreadyProcessedError(SubscriptionError):
    """Change request is terminal (approved or rejected)."""
    error_code = "REQUEST_ALREADY_PROCESSED"
    status_code = 409


class ExpiredError(SubscriptionError):
    """Reactivation attempted after end_date; extend first."""
    error_code = "SUBSCRIPTION_EXPIRED"
    status_code = 400


class UnauthorizedError(SubscriptionError):
    error_code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(SubscriptionError):
    error_code = "FORBIDDEN"
    status_code = 403


class StorageError(SubscriptionError):
    """Persistence failure on a write path. Always surfaced."""
    error_code = "STORAGE_ERROR"
    status_code = 503


@asynccontextmanager
async def storage_guard(operation: str):
    """Wrap a write path so driver failures surface as StorageError.

    Usage:
        async with storage_guard("assign subscription"):
            await db.users.update_one(...)
    """
    try:
        yield
    except PyMongoError as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise StorageError(f"Failed to {operation}") from e

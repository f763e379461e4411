"""Error kinds and the result envelope returned by every manager operation.

Managers raise ``EngineError`` internally; raising inside a store
transaction aborts it before anything is written. The ``operation``
decorator turns the outcome into an ``OperationResult`` so that callers
branch on ``success`` instead of catching exceptions.
"""
import inspect
from enum import Enum
from functools import wraps
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from timeout_app.core.logging import LogTimer, get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    INVALID_ARGUMENT = "invalid-argument"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    CONFLICT = "already-exists"
    FAILED_PRECONDITION = "failed-precondition"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    INTERNAL = "internal"


HTTP_STATUS = {
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.FAILED_PRECONDITION: 412,
    ErrorCode.RESOURCE_EXHAUSTED: 429,
    ErrorCode.INTERNAL: 500,
}


class EngineError(Exception):
    """Base exception for membership and lifecycle failures."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.code]


class InvalidArgument(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_ARGUMENT, message)


class Unauthenticated(EngineError):
    def __init__(self, message: str = "User must be authenticated"):
        super().__init__(ErrorCode.UNAUTHENTICATED, message)


class PermissionDenied(EngineError):
    def __init__(self, message: str = "Permission denied"):
        super().__init__(ErrorCode.PERMISSION_DENIED, message)


class NotFound(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.NOT_FOUND, message)


class Conflict(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.CONFLICT, message)


class FailedPrecondition(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.FAILED_PRECONDITION, message)


class ResourceExhausted(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.RESOURCE_EXHAUSTED, message)


class InternalError(EngineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INTERNAL, message)


class StatsInvariantError(InternalError):
    """A cumulative study stat would decrease. Never clamped."""


class OperationResult(BaseModel):
    """Response envelope: ``{success, data | errorCode, errorMessage}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    data: Optional[Any] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: EngineError) -> "OperationResult":
        return cls(success=False, error_code=error.code, error_message=error.message)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return HTTP_STATUS[self.error_code]

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def operation(name: str, **context_args: str):
    """Decorator for manager operations.

    Times the call, returns ``OperationResult.ok`` with the operation's
    return value, and maps ``EngineError`` to ``OperationResult.fail``.
    Anything else is logged with its traceback and reported as internal.

    Args:
        name: Operation name used in logs
        context_args: Log field -> keyword argument name, e.g.
            ``room_id="room_id"`` copies the call's ``room_id`` into the log

    Example:
        >>> @operation("join_room", room_id="room_id", user_id="user_id")
        ... def join_room(self, room_id, user_id): ...
    """
    def decorator(func):
        signature = inspect.signature(func)

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            bound = signature.bind_partial(self, *args, **kwargs).arguments
            context = {
                field: bound[arg] for field, arg in context_args.items() if arg in bound
            }
            with LogTimer(self.logger, name, **context) as timer:
                try:
                    return OperationResult.ok(func(self, *args, **kwargs))
                except EngineError as e:
                    timer.rejected(e.code.value)
                    if e.code == ErrorCode.INTERNAL:
                        self.logger.error(f"{name}: {e.message}", extra=context)
                    return OperationResult.fail(e)
                except Exception as e:
                    timer.rejected(ErrorCode.INTERNAL.value)
                    self.logger.error(f"{name} raised unexpectedly: {e}", extra=context, exc_info=True)
                    return OperationResult.fail(InternalError(f"Failed to {name.replace('_', ' ')}"))
        return wrapper
    return decorator

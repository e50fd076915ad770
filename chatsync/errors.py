"""
Error taxonomy shared by the server and the sync client.

Every failure that crosses a component boundary is a ChatError carrying a
closed ErrorKind. The server maps kinds to HTTP statuses, the client maps
HTTP statuses and transport failures back to kinds, and the UI only ever
sees sanitize_error() output.
"""

import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    OWNERSHIP = "ownership"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    FORBIDDEN = "forbidden"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


GENERIC_ERROR_MESSAGE = "An error occurred. Please try again."


class ChatError(Exception):
    """Base class for all expected chat failures."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    http_status: int = 500
    public_message: str = GENERIC_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class ValidationError(ChatError):
    kind = ErrorKind.VALIDATION
    http_status = 422
    public_message = "Invalid input."


class EmptyRoomCode(ValidationError):
    public_message = "Room code cannot be empty"


class RoomCodeTooLong(ValidationError):
    public_message = "Room code cannot exceed 30 characters"


class InvalidNickname(ValidationError):
    public_message = "Nickname must be between 1 and 20 characters"


class EmptyMessage(ValidationError):
    public_message = "Message content or media is required"


class ContentTooLong(ValidationError):
    public_message = "Message is too long"


class RoomAlreadyExists(ChatError):
    kind = ErrorKind.CONFLICT
    http_status = 409
    public_message = "Room already exists. Please use Join Room."


class NonceConflict(ChatError):
    kind = ErrorKind.CONFLICT
    http_status = 409
    public_message = "Failed to send message. Please try again."


class RoomNotFound(ChatError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404
    public_message = "Room does not exist. Please check the room code."


class Forbidden(ChatError):
    kind = ErrorKind.FORBIDDEN
    http_status = 403
    public_message = "Permission denied."


class TransientError(ChatError):
    kind = ErrorKind.TRANSIENT
    http_status = 503
    public_message = "Network error. Please check your connection and try again."


class UnexpectedError(ChatError):
    kind = ErrorKind.UNEXPECTED
    http_status = 500


# Client-only errors: never produced by the server


class MutationRejected(ChatError):
    """The server answered ok=false: message gone or owned by someone else."""

    kind = ErrorKind.OWNERSHIP

    def __init__(self, public_message: Optional[str] = None):
        if public_message:
            self.public_message = public_message
        super().__init__(public_message)


class MessageNotConfirmed(ValidationError):
    public_message = "Please wait for the message to finish sending"


class RoomVerificationFailed(ChatError):
    kind = ErrorKind.UNEXPECTED
    public_message = "Room creation verification failed. Please try joining the room instead."


class OperationCancelled(ChatError):
    kind = ErrorKind.CANCELLED
    public_message = "The room was closed before the operation finished."


# Wire "kind" values the server puts in error bodies. Subclass names are
# used so the client can rebuild the precise error, falling back to the
# HTTP status when the body is missing or unknown.
ERROR_CLASSES = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        EmptyRoomCode,
        RoomCodeTooLong,
        InvalidNickname,
        EmptyMessage,
        ContentTooLong,
        RoomAlreadyExists,
        NonceConflict,
        RoomNotFound,
        Forbidden,
        TransientError,
        UnexpectedError,
    )
}

STATUS_ERROR_CLASSES = {
    403: Forbidden,
    404: RoomNotFound,
    409: NonceConflict,
    422: ValidationError,
    429: TransientError,
    502: TransientError,
    503: TransientError,
    504: TransientError,
}


def error_from_response(status_code: int, code: Optional[str] = None) -> ChatError:
    """Rebuild a ChatError from an HTTP status and the body's error code."""
    cls = ERROR_CLASSES.get(code or "")
    if cls is None:
        cls = STATUS_ERROR_CLASSES.get(status_code, UnexpectedError)
    return cls()


def is_transient(error: BaseException) -> bool:
    """Only classified transient failures are worth retrying."""
    return isinstance(error, ChatError) and error.retryable


def sanitize_error(error: Optional[BaseException]) -> str:
    """User-facing text for any failure. Never echoes raw server detail."""
    if error is None:
        return "An unexpected error occurred"
    if isinstance(error, ChatError):
        return error.public_message
    return GENERIC_ERROR_MESSAGE


def log_operation_error(operation: str, context: dict[str, Any], error: BaseException) -> None:
    """
    Emit a structured diagnostic for a failed chat operation.

    The context must only carry identifiers (room code, message id, attempt
    counts). Message content and nicknames never reach the logs.
    """
    extra = {
        "operation": operation,
        "error_kind": error.kind.value if isinstance(error, ChatError) else ErrorKind.UNEXPECTED.value,
        "error_type": type(error).__name__,
        "public_message": sanitize_error(error),
        **context,
    }
    if isinstance(error, ChatError):
        logger.warning("Chat operation failed", extra=extra)
    else:
        logger.error("Chat operation failed", extra=extra, exc_info=error)

"""Application error types shared by every pipeline stage.

Errors carry a machine-readable ``ErrorCode`` and an ``expose`` flag. Only
exposed errors show their own message to the end user; everything else is
reported with a generic message while the detail goes to the log.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    AI_API_ERROR = "AI_API_ERROR"
    AI_INVALID_RESPONSE = "AI_INVALID_RESPONSE"
    AI_MESSAGE_TOO_LARGE = "AI_MESSAGE_TOO_LARGE"
    REVIEW_EXECUTION_NO_TARGET_CHECKLIST = "REVIEW_EXECUTION_NO_TARGET_CHECKLIST"
    REVIEW_DOCUMENT_CACHE_NOT_FOUND = "REVIEW_DOCUMENT_CACHE_NOT_FOUND"
    DOCUMENT_EMPTY = "DOCUMENT_EMPTY"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    ABORTED = "ABORTED"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"


_DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AI_API_ERROR: "The AI API returned an error: {detail}",
    ErrorCode.AI_INVALID_RESPONSE: "The AI returned an invalid response",
    ErrorCode.AI_MESSAGE_TOO_LARGE: "The document is too large for the AI to process",
    ErrorCode.REVIEW_EXECUTION_NO_TARGET_CHECKLIST: "There are no checklist items to review",
    ErrorCode.REVIEW_DOCUMENT_CACHE_NOT_FOUND: "Document cache not found: {document_id}",
    ErrorCode.DOCUMENT_EMPTY: "The document has no content: {name}",
    ErrorCode.EXTRACTION_FAILED: "Failed to extract text from {path}",
    ErrorCode.AGENT_NOT_FOUND: "Unknown agent '{agent_id}'",
    ErrorCode.ABORTED: "The operation was cancelled",
    ErrorCode.VALIDATION: "Invalid input: {detail}",
    ErrorCode.INTERNAL: GENERIC_ERROR_MESSAGE,
}


class ReviewEngineError(Exception):
    """Base application error with a code and an exposure flag."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        expose: bool = False,
        message_params: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.expose = expose
        self.message_params = dict(message_params or {})
        if message is None:
            template = _DEFAULT_MESSAGES.get(code, GENERIC_ERROR_MESSAGE)
            try:
                message = template.format(**self.message_params)
            except (KeyError, IndexError):
                message = template
        self.message = message
        super().__init__(message)

    @property
    def user_message(self) -> str:
        """Message safe to show to the end user."""
        return self.message if self.expose else GENERIC_ERROR_MESSAGE


class ContentLengthError(ReviewEngineError):
    """The model rejected the input (or cut the output) for being too long."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.AI_MESSAGE_TOO_LARGE, message, expose=True)


class AbortedError(ReviewEngineError):
    """Raised once an abort signal has fired."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(ErrorCode.ABORTED, reason, expose=True)


class ExtractionError(ReviewEngineError):
    """Raised when a file cannot be converted to text."""

    def __init__(self, path: str | Path, detail: str | None = None) -> None:
        self.path = Path(path)
        message = f"Failed to extract text from {self.path.name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            ErrorCode.EXTRACTION_FAILED,
            message,
            expose=True,
            message_params={"path": str(self.path)},
        )


def internal_error(
    code: ErrorCode = ErrorCode.INTERNAL,
    message: str | None = None,
    *,
    expose: bool = False,
    **message_params: Any,
) -> ReviewEngineError:
    """Build (but do not raise) an internal error."""
    return ReviewEngineError(
        code, message, expose=expose, message_params=message_params
    )


def normalize_error(exc: BaseException) -> ReviewEngineError:
    """Map any exception onto a ``ReviewEngineError``."""
    if isinstance(exc, ReviewEngineError):
        return exc
    if isinstance(exc, ValidationError):
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return ReviewEngineError(
            ErrorCode.VALIDATION, expose=True, message_params={"detail": detail}
        )
    error = ReviewEngineError(ErrorCode.INTERNAL, str(exc) or GENERIC_ERROR_MESSAGE)
    error.__cause__ = exc
    return error


def error_message(exc: BaseException) -> str:
    """User-facing message for any exception."""
    return normalize_error(exc).user_message


def checklist_error_message(checklists: Iterable[Any], error: str) -> str:
    """Render one ``・{content}:{error}`` line per checklist item."""
    return "\n".join(f"・{item.content}:{error}" for item in checklists)

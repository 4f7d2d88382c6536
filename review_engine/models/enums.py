"""Enumerations shared by the review and chat pipelines."""

from __future__ import annotations

from enum import Enum


class StepStatus(str, Enum):
    """Terminal status of a pipeline step."""

    SUCCESS = "success"
    FAILED = "failed"


class FinishReason(str, Enum):
    """Outcome of one chunk or document attempt.

    ``CONTENT_LENGTH`` is the only value that asks the caller to split the
    input further and try again.
    """

    SUCCESS = "success"
    ERROR = "error"
    CONTENT_LENGTH = "content_length"


class ProcessMode(str, Enum):
    """How an uploaded file is presented to the model."""

    TEXT = "text"
    IMAGE = "image"


class DocumentMode(str, Enum):
    """Review strategy selected per run."""

    SMALL = "small"
    LARGE = "large"

    @classmethod
    def all_values(cls) -> list[str]:
        return [m.value for m in cls]


DEFAULT_EVALUATION_LABELS: tuple[str, ...] = ("A", "B", "C", "-")

"""Persisted review results and the step/run outcomes of the pipelines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, field_validator

from .checklist import ChecklistItem
from .enums import StepStatus


class ReviewResult(BaseModel):
    """Final verdict for one checklist item; upserted by ``checklist_id``."""

    checklist_id: int
    evaluation: str
    comment: str
    file_id: str | None = None
    file_name: str | None = None

    @field_validator("comment", mode="before")
    def _strip_comment(cls, value: object) -> str:  # type: ignore[override]
        return str(value or "").strip()


class LargeDocumentResult(BaseModel):
    """Comment produced for one checklist item by one document (or part)."""

    review_document_cache_id: int
    checklist_id: int
    comment: str
    total_chunks: int = 1
    chunk_index: int = 0
    individual_file_name: str


class IndividualResult(BaseModel):
    document_id: int
    comment: str
    individual_file_name: str


class ChecklistResultDetail(BaseModel):
    """A checklist item with its consolidated and per-document results."""

    checklist: ChecklistItem
    evaluation: str | None = None
    comment: str | None = None
    individual_results: list[IndividualResult] = []


@dataclass
class StepResult:
    """Outcome of one unit of work at a fan-out boundary."""

    status: StepStatus
    error_message: str | None = None
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(StepStatus.SUCCESS, value=value)

    @classmethod
    def failed(cls, error_message: str) -> "StepResult":
        return cls(StepStatus.FAILED, error_message=error_message)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


@dataclass
class RunOutcome:
    """Terminal result returned by the orchestrators."""

    status: StepStatus
    error_message: str | None = None
    answer: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"status": self.status.value, "error_message": self.error_message}

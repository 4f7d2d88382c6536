"""Typed per-call settings handed to agents alongside the message.

Each call site has its own context shape. Agents render their system prompt
templates from the context, so none of these settings leak into the message
text.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..models import ChecklistItem, EvaluationItem


@dataclass(frozen=True)
class ClassificationContext:
    max_categories: int
    max_checklists_per_category: int


@dataclass(frozen=True)
class ReviewContext:
    checklist_items: list[ChecklistItem]
    evaluation_items: list[EvaluationItem] = field(default_factory=list)
    additional_instructions: str | None = None
    comment_format: str | None = None


@dataclass(frozen=True)
class SummaryContext:
    checklist_items: list[ChecklistItem]


@dataclass(frozen=True)
class ReadinessContext:
    checklist_items: list[ChecklistItem]
    additional_instructions: str | None = None
    iteration: int = 1


@dataclass(frozen=True)
class AnswerContext:
    checklist_items: list[ChecklistItem]
    document_name: str = ""


@dataclass(frozen=True)
class IndividualReviewContext:
    checklist_items: list[ChecklistItem]
    additional_instructions: str | None = None
    comment_format: str | None = None
    is_split_part: bool = False


@dataclass(frozen=True)
class ConsolidateContext:
    checklist_items: list[ChecklistItem]
    evaluation_items: list[EvaluationItem] = field(default_factory=list)
    additional_instructions: str | None = None
    comment_format: str | None = None


@dataclass(frozen=True)
class PlanContext:
    available_documents: list[dict[str, Any]]
    checklist_info: str
    review_mode: str


@dataclass(frozen=True)
class ResearchContext:
    research_content: str
    checklist_info: str = ""
    total_chunks: int = 1


@dataclass(frozen=True)
class ChatAnswerContext:
    user_question: str
    checklist_info: str


def to_template_context(value: Any) -> Any:
    """Convert a context into the plain dict/list tree pystache renders."""
    if value is None:
        return {}
    return _plain(value)


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return {k: _plain(v) for k, v in value.model_dump().items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value

"""Structured-output schemas requested from the agents.

``review_sections`` fields make the model name the files and sections it read
before commenting. The value is discarded.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Sequence

from pydantic import BaseModel, Field, create_model

from .document import QuestionAnswer, TopicSummary


class CategoryAssignment(BaseModel):
    name: str
    checklist_ids: list[int] = Field(default_factory=list)


class ClassificationOutput(BaseModel):
    categories: list[CategoryAssignment] = Field(default_factory=list)


class ReviewSection(BaseModel):
    file_name: str = Field(description="file name to review")
    section_names: list[str] = Field(
        default_factory=list, description="section names within the file"
    )


class IndividualReviewItem(BaseModel):
    review_sections: list[ReviewSection] = Field(default_factory=list)
    checklist_id: int
    comment: str


class SummaryOutput(BaseModel):
    topic_and_summary_list: list[TopicSummary] = Field(default_factory=list)


class DocumentQuestions(BaseModel):
    document_id: str
    questions: list[str] = Field(default_factory=list)


class FirstReadinessOutput(BaseModel):
    additional_questions: list[DocumentQuestions] = Field(default_factory=list)


class SubsequentReadinessOutput(BaseModel):
    ready: bool = False
    additional_questions: list[DocumentQuestions] = Field(default_factory=list)


class AnswerOutput(BaseModel):
    answers: list[QuestionAnswer] = Field(default_factory=list)


class ResearchTask(BaseModel):
    reasoning: str = Field(description="Reason for selecting this document")
    document_id: str = Field(description="Document ID to investigate")
    research_content: str = Field(description="Detailed research instructions")


class PlanOutput(BaseModel):
    tasks: list[ResearchTask] = Field(default_factory=list)


def _label_type(labels: tuple[str, ...]) -> object:
    return Literal[labels]  # type: ignore[valid-type]


@lru_cache(maxsize=32)
def _review_item_model(labels: tuple[str, ...]) -> type[BaseModel]:
    return create_model(
        "ReviewItem",
        checklist_id=(int, ...),
        review_sections=(list[ReviewSection], Field(default_factory=list)),
        comment=(str, Field(description="evaluation comment")),
        evaluation=(_label_type(labels), Field(description="evaluation")),
    )


@lru_cache(maxsize=32)
def _consolidated_item_model(labels: tuple[str, ...]) -> type[BaseModel]:
    return create_model(
        "ConsolidatedItem",
        checklist_id=(int, ...),
        comment=(str, Field(description="consolidated comment")),
        evaluation=(_label_type(labels), Field(description="evaluation")),
    )


def review_item_model(labels: Sequence[str]) -> type[BaseModel]:
    """Per-checklist review output with ``evaluation`` limited to ``labels``."""
    return _review_item_model(tuple(labels))


def consolidated_item_model(labels: Sequence[str]) -> type[BaseModel]:
    return _consolidated_item_model(tuple(labels))

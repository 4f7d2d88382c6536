"""Checklist items, categories and the evaluation settings of a run."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import DEFAULT_EVALUATION_LABELS


class ChecklistItem(BaseModel):
    """A single reviewable criterion."""

    model_config = ConfigDict(frozen=True)

    id: int
    content: str

    @field_validator("content", mode="before")
    def _strip_content(cls, value: object) -> str:  # type: ignore[override]
        return str(value or "").strip()


class EvaluationItem(BaseModel):
    """A custom evaluation label and what it means."""

    label: str
    description: str = ""

    @field_validator("label", mode="before")
    def _strip_label(cls, value: object) -> str:  # type: ignore[override]
        label = str(value or "").strip()
        if not label:
            raise ValueError("evaluation label must not be empty")
        return label


class EvaluationSettings(BaseModel):
    items: list[EvaluationItem] = Field(default_factory=list)

    def labels(self) -> list[str]:
        return [item.label for item in self.items]


def evaluation_labels(settings: EvaluationSettings | None) -> list[str]:
    """Return the custom labels when configured, else ``A/B/C/-``."""
    if settings is not None and settings.items:
        return settings.labels()
    return list(DEFAULT_EVALUATION_LABELS)


@dataclass
class ReviewSettings:
    """Presentation settings threaded through review and consolidation."""

    additional_instructions: str | None = None
    comment_format: str | None = None
    evaluation_settings: EvaluationSettings | None = None

    @property
    def labels(self) -> list[str]:
        return evaluation_labels(self.evaluation_settings)


@dataclass
class Category:
    """A named group of checklist items reviewed together."""

    name: str
    checklists: list[ChecklistItem] = field(default_factory=list)

    @property
    def ids(self) -> list[int]:
        return [item.id for item in self.checklists]

"""Public model exports.

Modules and tests should import ``from review_engine.models import ...``.
"""

from __future__ import annotations

from .checklist import (
    Category,
    ChecklistItem,
    EvaluationItem,
    EvaluationSettings,
    ReviewSettings,
    evaluation_labels,
)
from .document import (
    Chunk,
    DocumentCache,
    DocumentState,
    ExtractedDocument,
    QuestionAnswer,
    TopicSummary,
    UploadedFile,
)
from .enums import (
    DEFAULT_EVALUATION_LABELS,
    DocumentMode,
    FinishReason,
    ProcessMode,
    StepStatus,
)
from .results import (
    ChecklistResultDetail,
    IndividualResult,
    LargeDocumentResult,
    ReviewResult,
    RunOutcome,
    StepResult,
)

__all__ = [
    "Category",
    "ChecklistItem",
    "ChecklistResultDetail",
    "Chunk",
    "DEFAULT_EVALUATION_LABELS",
    "DocumentCache",
    "DocumentMode",
    "DocumentState",
    "EvaluationItem",
    "EvaluationSettings",
    "ExtractedDocument",
    "FinishReason",
    "IndividualResult",
    "LargeDocumentResult",
    "ProcessMode",
    "QuestionAnswer",
    "ReviewResult",
    "ReviewSettings",
    "RunOutcome",
    "StepResult",
    "StepStatus",
    "TopicSummary",
    "UploadedFile",
    "evaluation_labels",
]

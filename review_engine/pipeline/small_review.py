"""Small-document mode: review one category against all documents at once."""

from __future__ import annotations

import hashlib
import logging
from typing import Sequence

from ..errors import AbortedError, checklist_error_message, error_message
from ..llm.adapter import ensure_finished
from ..llm.contexts import ReviewContext
from ..llm.provider import Message
from ..models import (
    ChecklistItem,
    ExtractedDocument,
    ReviewResult,
    ReviewSettings,
    StepResult,
)
from ..models.outputs import review_item_model
from .deps import PipelineDeps
from .messages import checklist_reminder, create_combined_message

logger = logging.getLogger(__name__)

REVIEW_PROMPT = "Please review the following documents"
MISSING_RESULT_MESSAGE = "The AI output did not contain review results"


def file_identity(documents: Sequence[ExtractedDocument]) -> tuple[str, str]:
    """Stable ``(file_id, file_name)`` for a document set."""
    ids = "/".join(doc.id for doc in documents)
    names = "/".join(doc.name for doc in documents)
    return hashlib.md5(ids.encode("utf-8")).hexdigest(), names


def build_review_message(documents: Sequence[ExtractedDocument]) -> Message:
    return create_combined_message(documents, REVIEW_PROMPT)


async def review_category_small(
    deps: PipelineDeps,
    review_history_id: str,
    checklists: Sequence[ChecklistItem],
    documents: Sequence[ExtractedDocument],
    settings: ReviewSettings,
    *,
    message: Message | None = None,
) -> StepResult:
    """Review ``checklists`` against the combined document message.

    Items the model leaves out are asked for again, up to the attempt budget.
    Results are upserted after every attempt.
    """
    base_message = message or build_review_message(documents)
    labels = settings.labels
    output_type = list[review_item_model(labels)]  # type: ignore[misc]
    file_id, file_name = file_identity(documents)
    evaluation_items = (
        settings.evaluation_settings.items if settings.evaluation_settings else []
    )

    target = list(checklists)
    try:
        for attempt in range(1, deps.config.review_max_attempts + 1):
            if attempt > 1:
                logger.info(
                    "Retry %d/%d for %d checklist item(s)",
                    attempt,
                    deps.config.review_max_attempts,
                    len(target),
                )
            result = await deps.call(
                "checklist-review",
                base_message.extended(checklist_reminder(target)),
                output=output_type,
                context=ReviewContext(
                    checklist_items=target,
                    evaluation_items=list(evaluation_items),
                    additional_instructions=settings.additional_instructions,
                    comment_format=settings.comment_format,
                ),
            )
            ensure_finished(result)

            target_ids = {item.id for item in target}
            reviewed: dict[int, ReviewResult] = {}
            for item in result.object or []:
                if item.checklist_id not in target_ids:
                    continue
                reviewed[item.checklist_id] = ReviewResult(
                    checklist_id=item.checklist_id,
                    evaluation=item.evaluation,
                    comment=item.comment,
                    file_id=file_id,
                    file_name=file_name,
                )
            await deps.repository.upsert_review_results(
                review_history_id, list(reviewed.values())
            )

            target = [item for item in target if item.id not in reviewed]
            if not target:
                return StepResult.success()

        logger.warning("%d checklist item(s) were never reviewed", len(target))
        return StepResult.failed(checklist_error_message(target, MISSING_RESULT_MESSAGE))
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Category review failed", exc_info=True)
        return StepResult.failed(checklist_error_message(checklists, error_message(exc)))

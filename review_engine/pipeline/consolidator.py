"""Merge per-document review comments into one verdict per checklist item."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import AbortedError, checklist_error_message, error_message
from ..llm.adapter import ensure_finished
from ..llm.contexts import ConsolidateContext
from ..llm.provider import Message
from ..models import ChecklistItem, ReviewResult, ReviewSettings, StepResult
from ..models.outputs import IndividualReviewItem, consolidated_item_model
from .deps import PipelineDeps
from .messages import format_checklist_lines

logger = logging.getLogger(__name__)

MISSING_CONSOLIDATION_MESSAGE = "The AI output did not contain consolidated review results"


@dataclass
class DocumentReview:
    """Comments one document (or document part) produced for a category."""

    document_name: str
    original_name: str
    results: list[IndividualReviewItem] = field(default_factory=list)


def build_consolidation_message(
    reviews: Sequence[DocumentReview], checklists: Sequence[ChecklistItem]
) -> Message:
    contents = {item.id: item.content for item in checklists}
    originals = list(dict.fromkeys(review.original_name for review in reviews))

    sections = []
    for review in reviews:
        heading = f"### Document: {review.document_name}"
        if review.original_name != review.document_name:
            heading += f" (part of {review.original_name})"
        lines = [heading]
        for result in review.results:
            lines.append(
                f"\n**Checklist ID {result.checklist_id}**: "
                f"{contents.get(result.checklist_id, 'Unknown')}\n"
                f"- **Comment**: {result.comment}"
            )
        sections.append("\n".join(lines))

    return Message.from_text(
        "Please consolidate the following individual document review results "
        "into a comprehensive final review.\n\n"
        "## Document Set Information:\n"
        f"Original Files: {', '.join(originals)}\n\n"
        "## Individual Document Review Results:\n"
        + "\n\n".join(sections)
        + "\n\n## Checklist Items for Consolidation:\n"
        + format_checklist_lines(checklists)
        + "\n\nPlease provide a consolidated review that synthesizes all individual "
        "document reviews into a unified assessment for the entire document set."
    )


async def consolidate_reviews(
    deps: PipelineDeps,
    review_history_id: str,
    reviews: Sequence[DocumentReview],
    checklists: Sequence[ChecklistItem],
    settings: ReviewSettings,
) -> StepResult:
    """Produce and upsert one ``{evaluation, comment}`` per checklist item.

    Omitted items are requested again, narrowing each attempt to what is still
    missing. When attempts run out, the failure names every unresolved item.
    """
    output_type = list[consolidated_item_model(settings.labels)]  # type: ignore[misc]
    evaluation_items = (
        settings.evaluation_settings.items if settings.evaluation_settings else []
    )
    max_attempts = deps.config.consolidate_max_attempts

    target = list(checklists)
    try:
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                logger.info(
                    "Consolidation retry %d/%d for %d checklist item(s)",
                    attempt,
                    max_attempts,
                    len(target),
                )
            target_ids = {item.id for item in target}
            narrowed = [
                DocumentReview(
                    r.document_name,
                    r.original_name,
                    [res for res in r.results if res.checklist_id in target_ids],
                )
                for r in reviews
            ]
            result = await deps.call(
                "consolidate-review",
                build_consolidation_message(narrowed, target),
                output=output_type,
                context=ConsolidateContext(
                    checklist_items=target,
                    evaluation_items=list(evaluation_items),
                    additional_instructions=settings.additional_instructions,
                    comment_format=settings.comment_format,
                ),
            )
            ensure_finished(result)

            consolidated: dict[int, ReviewResult] = {}
            for item in result.object or []:
                if item.checklist_id in target_ids:
                    consolidated[item.checklist_id] = ReviewResult(
                        checklist_id=item.checklist_id,
                        evaluation=item.evaluation,
                        comment=item.comment,
                    )
            await deps.repository.upsert_review_results(
                review_history_id, list(consolidated.values())
            )

            target = [item for item in target if item.id not in consolidated]
            if not target:
                return StepResult.success()

        logger.warning(
            "Consolidation left %d checklist item(s) unresolved after %d attempts",
            len(target),
            max_attempts,
        )
        return StepResult.failed(
            checklist_error_message(target, MISSING_CONSOLIDATION_MESSAGE)
        )
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Consolidation failed", exc_info=True)
        return StepResult.failed(checklist_error_message(checklists, error_message(exc)))

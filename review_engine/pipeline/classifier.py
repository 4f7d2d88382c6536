"""Partition a run's checklist into categories reviewed one call each.

The model proposes the grouping. The result is then repaired into a strict
partition: unknown ids are dropped, duplicate ids keep their first category,
unassigned ids go to a synthetic "その他" (Other) category, and oversized
categories are split into numbered parts. If the call fails or its output is
unusable, the checklist is split into equal parts without the model.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import (
    AbortedError,
    ErrorCode,
    ReviewEngineError,
    error_message,
    internal_error,
)
from ..llm.adapter import ensure_finished
from ..llm.contexts import ClassificationContext
from ..llm.provider import Message
from ..models import Category, ChecklistItem, StepStatus
from ..models.outputs import CategoryAssignment, ClassificationOutput
from .deps import PipelineDeps
from .messages import format_checklist_lines

logger = logging.getLogger(__name__)

OTHER_CATEGORY_NAME = "その他"
CLASSIFY_FAILED_MESSAGE = "Failed to split the checklist into categories"

# Failures that trigger the equal-split fallback instead of failing the run.
_FALLBACK_CODES = {
    ErrorCode.AI_API_ERROR,
    ErrorCode.AI_INVALID_RESPONSE,
    ErrorCode.AI_MESSAGE_TOO_LARGE,
}


@dataclass
class ClassificationResult:
    status: StepStatus
    categories: list[Category] = field(default_factory=list)
    error_message: str | None = None


def split_checklist_equally(
    checklists: Sequence[ChecklistItem], max_size: int
) -> list[Category]:
    """Split into ``ceil(n / max_size)`` parts whose sizes differ by at most one."""
    if max_size < 1:
        raise ValueError("max_size must be at least 1")
    if not checklists:
        return []
    parts = math.ceil(len(checklists) / max_size)
    base, extra = divmod(len(checklists), parts)
    categories: list[Category] = []
    start = 0
    for i in range(parts):
        size = base + (1 if i < extra else 0)
        categories.append(
            Category(name=f"Part {i + 1}", checklists=list(checklists[start : start + size]))
        )
        start += size
    return categories


def _split_oversized(name: str, items: list[ChecklistItem], max_size: int) -> list[Category]:
    if len(items) <= max_size:
        return [Category(name=name, checklists=items)]
    parts = []
    for index, start in enumerate(range(0, len(items), max_size)):
        part_name = name if index == 0 else f"{name} (Part {index + 1})"
        parts.append(Category(name=part_name, checklists=items[start : start + max_size]))
    return parts


def build_categories(
    checklists: Sequence[ChecklistItem],
    assignments: Sequence[CategoryAssignment],
    max_size: int,
) -> list[Category]:
    """Turn model assignments into a partition of ``checklists``.

    Every input id appears in exactly one returned category.
    """
    by_id = {item.id: item for item in checklists}
    seen: set[int] = set()
    categories: list[Category] = []

    for assignment in assignments:
        items: list[ChecklistItem] = []
        for cid in assignment.checklist_ids:
            if cid in seen or cid not in by_id:
                continue
            seen.add(cid)
            items.append(by_id[cid])
        if items:
            name = assignment.name.strip() or f"Category {len(categories) + 1}"
            categories.extend(_split_oversized(name, items, max_size))

    unassigned = [item for item in checklists if item.id not in seen]
    if unassigned:
        logger.warning(
            "%d checklist item(s) were not categorised; adding them to %s",
            len(unassigned),
            OTHER_CATEGORY_NAME,
        )
        categories.extend(_split_oversized(OTHER_CATEGORY_NAME, unassigned, max_size))
    return categories


async def _fallback(deps: PipelineDeps, review_history_id: str) -> ClassificationResult:
    checklists = await deps.repository.get_checklists(review_history_id)
    max_size = max(deps.config.max_checklists_per_category, 1)
    return ClassificationResult(
        StepStatus.SUCCESS, split_checklist_equally(checklists, max_size)
    )


async def classify_checklists(
    deps: PipelineDeps, review_history_id: str
) -> ClassificationResult:
    """Load the run's checklist and group it into categories."""
    config = deps.config
    try:
        checklists = await deps.repository.get_checklists(review_history_id)
        if not checklists:
            raise internal_error(
                ErrorCode.REVIEW_EXECUTION_NO_TARGET_CHECKLIST, expose=True
            )

        if config.max_checklists_per_category <= 1:
            return ClassificationResult(
                StepStatus.SUCCESS, split_checklist_equally(checklists, 1)
            )

        message = Message.from_text(
            "Group the following checklist items into categories:\n"
            + format_checklist_lines(checklists)
        )
        result = await deps.call(
            "checklist-category",
            message,
            output=ClassificationOutput,
            context=ClassificationContext(
                max_categories=config.max_categories,
                max_checklists_per_category=config.max_checklists_per_category,
            ),
        )
        ensure_finished(result)
        output: ClassificationOutput | None = result.object
        if output is None or not output.categories:
            logger.warning("Classifier returned no categories; using equal split")
            return await _fallback(deps, review_history_id)

        categories = build_categories(
            checklists, output.categories, config.max_checklists_per_category
        )
        logger.info(
            "Classified %d checklist item(s) into %d categories",
            len(checklists),
            len(categories),
        )
        return ClassificationResult(StepStatus.SUCCESS, categories)
    except AbortedError:
        raise
    except ReviewEngineError as exc:
        if exc.code in _FALLBACK_CODES:
            logger.warning("Checklist classification failed (%s); using equal split", exc)
            try:
                return await _fallback(deps, review_history_id)
            except Exception as fallback_exc:
                logger.error("Equal-split fallback failed", exc_info=True)
                return ClassificationResult(
                    StepStatus.FAILED, error_message=error_message(fallback_exc)
                )
        logger.error("Checklist classification failed: %s", exc, exc_info=True)
        return ClassificationResult(StepStatus.FAILED, error_message=exc.user_message)
    except Exception as exc:
        logger.error("Checklist classification failed", exc_info=True)
        return ClassificationResult(StepStatus.FAILED, error_message=error_message(exc))

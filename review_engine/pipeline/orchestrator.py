"""Top-level review run: extract, classify, review every category, report."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..config import EngineConfig
from ..errors import AbortedError, error_message
from ..events import REVIEW_EXECUTION_FINISHED, RunObserver, notify
from ..llm.provider import Message
from ..llm.registry import AgentRegistry
from ..models import (
    Category,
    DocumentCache,
    DocumentMode,
    ExtractedDocument,
    ReviewSettings,
    RunOutcome,
    StepResult,
    StepStatus,
    UploadedFile,
)
from ..storage.repository import ReviewRepository
from .classifier import classify_checklists
from .concurrency import AbortSignal, gather_bounded
from .deps import PipelineDeps
from .extraction import FileExtractor, extract_documents
from .large_review import review_category_large
from .small_review import build_review_message, review_category_small

logger = logging.getLogger(__name__)

UNKNOWN_FAILURE_MESSAGE = "Unknown error"


@dataclass
class ReviewRequest:
    review_history_id: str
    files: list[UploadedFile]
    document_mode: DocumentMode = DocumentMode.SMALL
    settings: ReviewSettings = field(default_factory=ReviewSettings)


class ReviewOrchestrator:
    """Runs review executions against injected collaborators.

    Example:
        orchestrator = ReviewOrchestrator(registry, repository, extractor)
        outcome = asyncio.run(orchestrator.execute(request))
    """

    def __init__(
        self,
        agents: AgentRegistry,
        repository: ReviewRepository,
        extractor: FileExtractor,
        *,
        config: EngineConfig | None = None,
        observer: Optional[RunObserver] = None,
    ) -> None:
        self.agents = agents
        self.repository = repository
        self.extractor = extractor
        self.config = config or EngineConfig()
        self.observer = observer

    async def execute(
        self, request: ReviewRequest, abort_signal: AbortSignal | None = None
    ) -> RunOutcome:
        deps = PipelineDeps(
            agents=self.agents,
            repository=self.repository,
            config=self.config,
            abort_signal=abort_signal,
        )
        try:
            outcome = await self._run(deps, request)
        except AbortedError as exc:
            logger.info("Review %s aborted", request.review_history_id)
            outcome = RunOutcome(StepStatus.FAILED, error_message=exc.user_message)
        except Exception as exc:
            logger.error("Review %s crashed", request.review_history_id, exc_info=True)
            outcome = RunOutcome(StepStatus.FAILED, error_message=error_message(exc))

        if outcome.status is StepStatus.SUCCESS:
            logger.info("Review %s finished", request.review_history_id)
        else:
            logger.warning(
                "Review %s failed: %s", request.review_history_id, outcome.error_message
            )
        notify(self.observer, REVIEW_EXECUTION_FINISHED, outcome.to_payload())
        return outcome

    async def _run(self, deps: PipelineDeps, request: ReviewRequest) -> RunOutcome:
        history_id = request.review_history_id
        extraction, classification = await asyncio.gather(
            extract_documents(request.files, self.extractor, abort_signal=deps.abort_signal),
            classify_checklists(deps, history_id),
        )
        if not extraction.ok:
            return RunOutcome(
                StepStatus.FAILED,
                error_message=extraction.error_message or "Text extraction failed",
            )
        if classification.status is not StepStatus.SUCCESS:
            return RunOutcome(
                StepStatus.FAILED,
                error_message=classification.error_message
                or "Failed to split the checklist into categories",
            )

        documents: list[ExtractedDocument] = extraction.value
        await self.repository.delete_all_review_results(history_id)
        target_name = "/".join(doc.name for doc in documents if doc.name)
        if target_name:
            await self.repository.update_target_document_name(history_id, target_name)
        await self._cache_documents(history_id, documents)

        logger.info(
            "Reviewing %d document(s) in %d categor%s (%s mode)",
            len(documents),
            len(classification.categories),
            "y" if len(classification.categories) == 1 else "ies",
            request.document_mode.value,
        )
        results = await self._review_categories(
            deps, request, classification.categories, documents
        )

        failures = [r.error_message or UNKNOWN_FAILURE_MESSAGE for r in results if not r.ok]
        if failures:
            return RunOutcome(StepStatus.FAILED, error_message="\n".join(failures))
        return RunOutcome(StepStatus.SUCCESS)

    async def _cache_documents(
        self, history_id: str, documents: Sequence[ExtractedDocument]
    ) -> None:
        for document in documents:
            cache = await self.repository.save_document_cache(
                DocumentCache(
                    review_history_id=history_id,
                    document_id=document.id,
                    file_name=document.name,
                    file_type=document.type,
                    process_mode=document.process_mode,
                    text_content=document.text_content,
                    image_data=document.image_data,
                )
            )
            document.cache_id = cache.id

    async def _review_categories(
        self,
        deps: PipelineDeps,
        request: ReviewRequest,
        categories: Sequence[Category],
        documents: Sequence[ExtractedDocument],
    ) -> list[StepResult]:
        history_id = request.review_history_id
        settings = request.settings

        if request.document_mode is DocumentMode.LARGE:

            async def _review(category: Category) -> StepResult:
                return await review_category_large(
                    deps, history_id, category.checklists, documents, settings
                )

        else:
            message: Message = build_review_message(documents)

            async def _review(category: Category) -> StepResult:
                return await review_category_small(
                    deps,
                    history_id,
                    category.checklists,
                    documents,
                    settings,
                    message=message,
                )

        return await gather_bounded(categories, _review, abort_signal=deps.abort_signal)

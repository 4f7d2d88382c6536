"""Large-document mode: summarise, gather Q&A, review per document, consolidate.

Documents too big for the context window during the per-document review are
split into named parts (``"{id}_part{n}"``) and reviewed again with one more
part each time.
"""

from __future__ import annotations

import logging
from typing import Sequence

from ..errors import (
    AbortedError,
    ContentLengthError,
    ErrorCode,
    checklist_error_message,
    error_message,
    internal_error,
)
from ..llm.adapter import ensure_finished
from ..llm.contexts import (
    AnswerContext,
    IndividualReviewContext,
    ReadinessContext,
    SummaryContext,
)
from ..llm.provider import Message, TextPart
from ..models import (
    ChecklistItem,
    Chunk,
    DocumentState,
    ExtractedDocument,
    FinishReason,
    LargeDocumentResult,
    ReviewSettings,
    StepResult,
)
from ..models.outputs import (
    AnswerOutput,
    FirstReadinessOutput,
    IndividualReviewItem,
    SubsequentReadinessOutput,
    SummaryOutput,
)
from .chunk_retry import ChunkOutcome, ChunkRetryPolicy, run_chunk_retry
from .concurrency import gather_bounded
from .consolidator import DocumentReview, consolidate_reviews
from .deps import PipelineDeps
from .messages import (
    create_combined_message,
    document_overview,
    format_checklist_lines,
    format_qna,
    format_topics,
)
from .small_review import MISSING_RESULT_MESSAGE

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = "Please summarize the document and extract key topics and summaries."
ANSWER_PROMPT = "Please answer the following questions based on the document content."
INDIVIDUAL_REVIEW_PROMPT = "Please review this document against the provided checklist items"
SPLIT_NOTE = "- Note: This is a part of the original document that was split due to length constraints"


async def summarize_documents(
    deps: PipelineDeps,
    documents: Sequence[ExtractedDocument],
    checklists: Sequence[ChecklistItem],
) -> StepResult:
    """Summarise every document into topics. ``value`` is a list of ``DocumentState``."""

    async def _summarize(document: ExtractedDocument) -> DocumentState:
        if document.is_empty():
            raise internal_error(ErrorCode.DOCUMENT_EMPTY, expose=True, name=document.name)
        result = await deps.call(
            "document-summarization",
            create_combined_message([document], SUMMARY_PROMPT),
            output=SummaryOutput,
            context=SummaryContext(checklist_items=list(checklists)),
        )
        ensure_finished(result)
        topics = result.object.topic_and_summary_list if result.object else []
        logger.debug("Summarised %s into %d topic(s)", document.name, len(topics))
        return DocumentState(document=document, topics=list(topics))

    if not documents:
        return StepResult.failed(
            checklist_error_message(checklists, internal_error().user_message)
        )
    try:
        states = await gather_bounded(
            documents, _summarize, abort_signal=deps.abort_signal
        )
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Document summarisation failed", exc_info=True)
        return StepResult.failed(checklist_error_message(checklists, error_message(exc)))
    return StepResult.success(states)


def _readiness_message(states: Sequence[DocumentState], *, include_qna: bool) -> Message:
    return Message.from_text(document_overview(states, include_qna=include_qna))


async def answer_questions(
    deps: PipelineDeps,
    state: DocumentState,
    questions: Sequence[str],
    checklists: Sequence[ChecklistItem],
) -> StepResult:
    """Answer follow-up questions about one document. ``value`` is the answers."""
    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
    message = create_combined_message([state.document], ANSWER_PROMPT).extended(
        TextPart(
            f"## Questions to Answer:\n{numbered}\n\n"
            "Please provide detailed answers to each question based on the document content."
        )
    )
    try:
        result = await deps.call(
            "question-answer",
            message,
            output=AnswerOutput,
            context=AnswerContext(
                checklist_items=list(checklists), document_name=state.document.name
            ),
        )
        ensure_finished(result)
        if result.object is None:
            raise internal_error(ErrorCode.AI_INVALID_RESPONSE, expose=True)
        return StepResult.success(list(result.object.answers))
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Answering questions for %s failed", state.document.name, exc_info=True)
        return StepResult.failed(error_message(exc))


async def run_readiness_loop(
    deps: PipelineDeps,
    states: list[DocumentState],
    checklists: Sequence[ChecklistItem],
    settings: ReviewSettings,
) -> StepResult:
    """Ask follow-up questions until the summaries suffice for the review.

    Stops when the readiness agent says it is ready, proposes no questions, or
    the iteration cap is reached. ``value`` is the updated states.
    """
    by_id = {state.document.id: state for state in states}
    max_iterations = deps.config.readiness_max_iterations

    for iteration in range(1, max_iterations + 1):
        first_run = all(not state.prior_qna for state in states)
        context = ReadinessContext(
            checklist_items=list(checklists),
            additional_instructions=settings.additional_instructions,
            iteration=iteration,
        )
        try:
            if first_run:
                result = await deps.call(
                    "review-readiness-first",
                    _readiness_message(states, include_qna=False),
                    output=FirstReadinessOutput,
                    context=context,
                )
                ensure_finished(result)
                ready = False
            else:
                result = await deps.call(
                    "review-readiness-subsequent",
                    _readiness_message(states, include_qna=True),
                    output=SubsequentReadinessOutput,
                    context=context,
                )
                ensure_finished(result)
                ready = bool(result.object and result.object.ready)
        except AbortedError:
            raise
        except Exception as exc:
            logger.error("Readiness check failed", exc_info=True)
            return StepResult.failed(checklist_error_message(checklists, error_message(exc)))

        groups = result.object.additional_questions if result.object else []
        pending = [
            (by_id[group.document_id], group.questions)
            for group in groups
            if group.document_id in by_id and group.questions
        ]
        if ready or not pending:
            logger.info("Review readiness reached after %d iteration(s)", iteration)
            return StepResult.success(states)

        logger.info(
            "Readiness iteration %d: %d document(s) have follow-up questions",
            iteration,
            len(pending),
        )
        answers = await gather_bounded(
            pending,
            lambda item: answer_questions(deps, item[0], item[1], checklists),
            abort_signal=deps.abort_signal,
        )
        if all(not answer.ok for answer in answers):
            message = next(
                (a.error_message for a in answers if a.error_message),
                internal_error().user_message,
            )
            return StepResult.failed(checklist_error_message(checklists, message))
        for (state, _), answer in zip(pending, answers):
            if answer.ok:
                state.prior_qna.extend(answer.value)

    logger.warning(
        "Readiness loop stopped after %d iterations without a ready signal",
        max_iterations,
    )
    return StepResult.success(states)


def _individual_review_message(
    document: ExtractedDocument,
    state: DocumentState,
    checklists: Sequence[ChecklistItem],
) -> Message:
    info = (
        "Document Information:\n"
        f"- Original File Name: {document.display_original_name}\n"
        f"- Current Document Name: {document.name}\n"
    )
    if document.is_split_part:
        info += SPLIT_NOTE + "\n"
    notes = ""
    if state.topics:
        notes += f"\n## Topics and Summaries:\n{format_topics(state)}\n"
    if state.prior_qna:
        notes += f"\n## Q&A Information:\n{format_qna(state)}\n"
    return create_combined_message([document], INDIVIDUAL_REVIEW_PROMPT).extended(
        TextPart(
            f"{info}{notes}\nChecklist Items to Review:\n{format_checklist_lines(checklists)}"
            "\n\nPlease provide a thorough review based on the document content provided above."
        )
    )


async def review_part(
    deps: PipelineDeps,
    document: ExtractedDocument,
    state: DocumentState,
    checklists: Sequence[ChecklistItem],
    settings: ReviewSettings,
) -> ChunkOutcome[DocumentReview]:
    """Review one document (or split part) and report how the call finished."""
    target = list(checklists)
    collected: list[IndividualReviewItem] = []
    max_attempts = deps.config.review_max_attempts
    try:
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                logger.info(
                    "Retry %d/%d reviewing %s for %d checklist item(s)",
                    attempt,
                    max_attempts,
                    document.name,
                    len(target),
                )
            result = await deps.call(
                "individual-review",
                _individual_review_message(document, state, target),
                output=list[IndividualReviewItem],
                context=IndividualReviewContext(
                    checklist_items=target,
                    additional_instructions=settings.additional_instructions,
                    comment_format=settings.comment_format,
                    is_split_part=document.is_split_part,
                ),
            )
            ensure_finished(result, length_is_overflow=True)

            target_ids = {item.id for item in target}
            returned = {
                item.checklist_id: item
                for item in result.object or []
                if item.checklist_id in target_ids
            }
            collected.extend(returned.values())
            target = [item for item in target if item.id not in returned]
            if not target:
                return ChunkOutcome.success(
                    DocumentReview(document.name, document.display_original_name, collected)
                )

        logger.warning(
            "%d checklist item(s) missing from the review of %s", len(target), document.name
        )
        return ChunkOutcome.error(checklist_error_message(target, MISSING_RESULT_MESSAGE))
    except ContentLengthError:
        return ChunkOutcome.content_length()
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Individual review of %s failed", document.name, exc_info=True)
        return ChunkOutcome.error(checklist_error_message(checklists, error_message(exc)))


async def review_document(
    deps: PipelineDeps,
    state: DocumentState,
    checklists: Sequence[ChecklistItem],
    settings: ReviewSettings,
) -> StepResult:
    """Review one document, splitting it into parts while it overflows.

    ``value`` is the list of ``DocumentReview`` (one per part) on success.
    """
    document = state.document
    config = deps.config
    policy = ChunkRetryPolicy(
        max_retries=config.document_split_retry_limit,
        text_overlap=config.review_text_overlap,
        image_overlap=config.review_image_overlap,
    )
    initial_chunks = 1
    if document.cache_id is not None:
        try:
            initial_chunks = await deps.repository.get_max_total_chunks_for_document(
                document.cache_id
            )
        except AbortedError:
            raise
        except Exception as exc:
            logger.error("Could not read split history of %s", document.name, exc_info=True)
            return StepResult.failed(checklist_error_message(checklists, error_message(exc)))

    async def _worker(chunk: Chunk) -> ChunkOutcome[DocumentReview]:
        part = document
        if chunk.total_chunks > 1:
            part = document.as_part(chunk.chunk_index + 1, chunk.text, chunk.images)
        outcome = await review_part(deps, part, state, checklists, settings)
        if outcome.finish_reason is not FinishReason.SUCCESS or document.cache_id is None:
            return outcome
        for item in outcome.value.results:
            try:
                await deps.repository.save_large_document_result(
                    LargeDocumentResult(
                        review_document_cache_id=document.cache_id,
                        checklist_id=item.checklist_id,
                        comment=item.comment,
                        total_chunks=chunk.total_chunks,
                        chunk_index=chunk.chunk_index,
                        individual_file_name=part.name,
                    )
                )
            except AbortedError:
                raise
            except Exception as exc:
                logger.error("Saving the review of %s failed", part.name, exc_info=True)
                failed = [c for c in checklists if c.id == item.checklist_id] or checklists
                return ChunkOutcome.error(checklist_error_message(failed, error_message(exc)))
        return outcome

    result = await run_chunk_retry(
        document,
        _worker,
        policy,
        initial_chunks=initial_chunks,
        abort_signal=deps.abort_signal,
    )
    if result.ok:
        return StepResult.success(result.values)
    if result.finish_reason is FinishReason.CONTENT_LENGTH:
        return StepResult.failed(checklist_error_message(checklists, result.error_message))
    return StepResult.failed(result.error_message)


async def review_category_large(
    deps: PipelineDeps,
    review_history_id: str,
    checklists: Sequence[ChecklistItem],
    documents: Sequence[ExtractedDocument],
    settings: ReviewSettings,
) -> StepResult:
    """Run the full large-document pipeline for one category."""
    summarized = await summarize_documents(deps, documents, checklists)
    if not summarized.ok:
        return summarized

    readiness = await run_readiness_loop(deps, summarized.value, checklists, settings)
    if not readiness.ok:
        return readiness
    states: list[DocumentState] = readiness.value

    outcomes = await gather_bounded(
        states,
        lambda state: review_document(deps, state, checklists, settings),
        abort_signal=deps.abort_signal,
    )
    failures = [o.error_message for o in outcomes if not o.ok]
    if len(failures) == len(outcomes):
        return StepResult.failed("\n".join(m for m in failures if m))
    if failures:
        logger.warning(
            "%d of %d document(s) failed individual review; consolidating the rest",
            len(failures),
            len(outcomes),
        )

    reviews: list[DocumentReview] = [
        review for outcome in outcomes if outcome.ok for review in outcome.value
    ]
    return await consolidate_reviews(deps, review_history_id, reviews, checklists, settings)

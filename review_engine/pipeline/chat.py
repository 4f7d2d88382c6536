"""Chat over a finished review: plan research, research documents, stream an answer.

The answer is streamed as line-framed records:

    0:"text delta"
    9:{tool call}
    a:{tool result}
    e:{"finishReason": ..., "promptTokens": ..., "completionTokens": ...}
    d:{"finishReason": ..., "promptTokens": ..., "completionTokens": ...}

``e:`` closes each model step and ``d:`` closes the whole answer.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from ..config import EngineConfig
from ..errors import (
    AbortedError,
    ContentLengthError,
    ErrorCode,
    error_message,
    internal_error,
)
from ..events import REVIEW_CHAT_COMPLETE, REVIEW_CHAT_ERROR, RunObserver, notify
from ..llm.adapter import ensure_finished, stream_agent
from ..llm.contexts import ChatAnswerContext, PlanContext, ResearchContext
from ..llm.provider import AgentResult, Message, StreamEventType, Usage
from ..llm.registry import AgentRegistry
from ..models import (
    Chunk,
    ChecklistResultDetail,
    DocumentCache,
    DocumentMode,
    RunOutcome,
    StepResult,
    StepStatus,
)
from ..models.outputs import PlanOutput, ResearchTask
from ..storage.repository import ReviewRepository
from .chunk_retry import ChunkOutcome, ChunkRetryPolicy, join_chunk_texts, run_chunk_retry
from .concurrency import AbortSignal, gather_bounded
from .deps import PipelineDeps
from .messages import chunk_message

logger = logging.getLogger(__name__)


@dataclass
class ChatRequest:
    review_history_id: str
    question: str
    checklist_ids: list[int] = field(default_factory=list)


@dataclass
class ResearchFinding:
    document_id: str
    result: str


class StreamWriter:
    """Writes framed answer records to ``write`` (e.g. ``sys.stdout.write``)."""

    def __init__(self, write: Callable[[str], Any]) -> None:
        self._write = write

    def _line(self, prefix: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        self._write(f"{prefix}:{encoded}\n")

    def text(self, text: str) -> None:
        self._line("0", text)

    def tool_call(self, payload: dict[str, Any]) -> None:
        self._line("9", payload)

    def tool_result(self, payload: dict[str, Any]) -> None:
        self._line("a", payload)

    def step_finish(self, finish_reason: str | None, usage: Usage | None) -> None:
        self._line("e", _finish_payload(finish_reason, usage))

    def finish(self, finish_reason: str | None, usage: Usage | None) -> None:
        self._line("d", _finish_payload(finish_reason, usage))


def _finish_payload(finish_reason: str | None, usage: Usage | None) -> dict[str, Any]:
    return {"finishReason": finish_reason or "unknown", **(usage or Usage()).to_dict()}


def judge_review_mode(results: Sequence[ChecklistResultDetail]) -> DocumentMode:
    """Large when any checklist carries per-document results."""
    if any(item.individual_results for item in results):
        return DocumentMode.LARGE
    return DocumentMode.SMALL


def build_planning_checklist_info(results: Sequence[ChecklistResultDetail]) -> str:
    blocks = []
    for item in results:
        info = f"Checklist ID: {item.checklist.id}\nContent: {item.checklist.content}\n"
        if item.evaluation is not None or item.comment is not None:
            info += (
                "Review Result:\n"
                f"  Evaluation: {item.evaluation or 'N/A'}\n"
                f"  Comment: {item.comment or 'N/A'}\n"
            )
        if item.individual_results:
            info += "Individual Review Results:\n"
            for result in item.individual_results:
                info += (
                    f"  - Document ID: {result.document_id}\n"
                    f"    Document Name: {result.individual_file_name}\n"
                    f"    Comment: {result.comment}\n"
                )
        blocks.append(info)
    return "\n---\n".join(blocks)


# Research sees the same checklist context as planning.
build_research_checklist_info = build_planning_checklist_info


def build_answer_checklist_info(results: Sequence[ChecklistResultDetail]) -> str:
    lines = []
    for item in results:
        info = f"Checklist: {item.checklist.content}\n"
        if item.evaluation is not None or item.comment is not None:
            info += f"Evaluation: {item.evaluation or 'N/A'}, Comment: {item.comment or 'N/A'}"
        lines.append(info)
    return "\n".join(lines)


def build_answer_prompt(question: str, findings: Sequence[ResearchFinding]) -> str:
    summary = "\n---\n".join(
        f"Document ID: {finding.document_id}\nFindings: {finding.result}"
        for finding in findings
    )
    return f"User Question: {question}\n\nResearch Findings:\n{summary}"


async def plan_research(
    deps: PipelineDeps,
    request: ChatRequest,
    results: Sequence[ChecklistResultDetail],
) -> list[ResearchTask]:
    caches = await deps.repository.get_review_document_caches(request.review_history_id)
    result = await deps.call(
        "chat-planning",
        Message.from_text(request.question),
        output=PlanOutput,
        context=PlanContext(
            available_documents=[
                {"id": str(cache.id), "file_name": cache.file_name} for cache in caches
            ],
            checklist_info=build_planning_checklist_info(results),
            review_mode=judge_review_mode(results).value,
        ),
    )
    ensure_finished(result)
    tasks = list(result.object.tasks) if result.object else []
    if not tasks:
        raise internal_error(ErrorCode.AI_INVALID_RESPONSE, expose=True)
    logger.info("Planned %d research task(s)", len(tasks))
    return tasks


async def _find_cache(
    repository: ReviewRepository, review_history_id: str, document_id: str
) -> DocumentCache:
    cache = None
    if document_id.strip().isdigit():
        cache = await repository.get_review_document_cache_by_id(int(document_id))
        if cache is not None and cache.review_history_id != review_history_id:
            cache = None
    if cache is None:
        cache = await repository.get_review_document_cache_by_document_id(
            review_history_id, document_id
        )
    if cache is None:
        raise internal_error(
            ErrorCode.REVIEW_DOCUMENT_CACHE_NOT_FOUND, expose=True, document_id=document_id
        )
    return cache


async def research_document(
    deps: PipelineDeps,
    review_history_id: str,
    task: ResearchTask,
    checklist_info: str,
) -> StepResult:
    """Research one document, adding chunks while it overflows.

    ``value`` is a ``ResearchFinding`` on success.
    """
    try:
        cache = await _find_cache(deps.repository, review_history_id, task.document_id)
        initial_chunks = await deps.repository.get_max_total_chunks_for_document(cache.id)
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("Could not prepare research for %s", task.document_id, exc_info=True)
        return StepResult.failed(error_message(exc))

    document = cache.to_document()
    config = deps.config
    policy = ChunkRetryPolicy(
        max_retries=config.chat_max_total_chunks,
        text_overlap=config.chat_overlap,
        image_overlap=config.chat_overlap,
        max_total_chunks=config.chat_max_total_chunks,
    )

    async def _worker(chunk: Chunk) -> ChunkOutcome[str]:
        try:
            result: AgentResult = await deps.call(
                "chat-research",
                chunk_message(
                    document.name,
                    chunk.chunk_index,
                    chunk.total_chunks,
                    task.research_content,
                    text=chunk.text,
                    images=chunk.images,
                ),
                context=ResearchContext(
                    research_content=task.research_content,
                    checklist_info=checklist_info,
                    total_chunks=chunk.total_chunks,
                ),
            )
            ensure_finished(result)
            return ChunkOutcome.success(result.text)
        except ContentLengthError:
            return ChunkOutcome.content_length()
        except AbortedError:
            raise
        except Exception as exc:
            logger.error("Research of %s failed", document.name, exc_info=True)
            return ChunkOutcome.error(error_message(exc))

    outcome = await run_chunk_retry(
        document,
        _worker,
        policy,
        initial_chunks=initial_chunks,
        abort_signal=deps.abort_signal,
    )
    if not outcome.ok:
        return StepResult.failed(outcome.error_message or f"Failed to research {document.name}")
    return StepResult.success(
        ResearchFinding(task.document_id, join_chunk_texts(document.name, outcome.values))
    )


async def generate_answer(
    deps: PipelineDeps,
    request: ChatRequest,
    results: Sequence[ChecklistResultDetail],
    findings: Sequence[ResearchFinding],
    writer: StreamWriter,
) -> str:
    """Stream the final answer through ``writer`` and return its full text."""
    parts: list[str] = []
    finish_reason: str | None = None
    usage: Usage | None = None
    async for event in stream_agent(
        deps.agents,
        "chat-answer",
        Message.from_text(build_answer_prompt(request.question, findings)),
        context=ChatAnswerContext(
            user_question=request.question,
            checklist_info=build_answer_checklist_info(results),
        ),
        abort_signal=deps.abort_signal,
    ):
        if event.type is StreamEventType.TEXT_DELTA:
            if event.text:
                parts.append(event.text)
                writer.text(event.text)
        elif event.type is StreamEventType.TOOL_CALL:
            writer.tool_call(event.payload or {})
        elif event.type is StreamEventType.TOOL_RESULT:
            writer.tool_result(event.payload or {})
        elif event.type is StreamEventType.STEP_FINISH:
            writer.step_finish(event.finish_reason, event.usage)
        elif event.type is StreamEventType.FINISH:
            finish_reason = event.finish_reason
            usage = event.usage

    ensure_finished(AgentResult(object=None, finish_reason=finish_reason or "other"))
    writer.finish(finish_reason, usage)
    return "".join(parts)


class ChatOrchestrator:
    """Answers questions about a finished review run."""

    def __init__(
        self,
        agents: AgentRegistry,
        repository: ReviewRepository,
        *,
        config: EngineConfig | None = None,
        observer: Optional[RunObserver] = None,
    ) -> None:
        self.agents = agents
        self.repository = repository
        self.config = config or EngineConfig()
        self.observer = observer

    async def answer(
        self,
        request: ChatRequest,
        writer: StreamWriter,
        abort_signal: AbortSignal | None = None,
    ) -> RunOutcome:
        deps = PipelineDeps(
            agents=self.agents,
            repository=self.repository,
            config=self.config,
            abort_signal=abort_signal,
        )
        try:
            answer = await self._answer(deps, request, writer)
        except Exception as exc:
            if isinstance(exc, AbortedError):
                logger.info("Chat for %s aborted", request.review_history_id)
            else:
                logger.error("Chat for %s failed", request.review_history_id, exc_info=True)
            message = error_message(exc)
            notify(self.observer, REVIEW_CHAT_ERROR, {"message": message})
            return RunOutcome(StepStatus.FAILED, error_message=message)

        notify(self.observer, REVIEW_CHAT_COMPLETE, {})
        return RunOutcome(StepStatus.SUCCESS, answer=answer)

    async def _answer(
        self, deps: PipelineDeps, request: ChatRequest, writer: StreamWriter
    ) -> str:
        history_id = request.review_history_id
        checklist_ids = request.checklist_ids or [
            item.id for item in await self.repository.get_checklists(history_id)
        ]
        results = await self.repository.get_checklist_results_with_individual_results(
            history_id, checklist_ids
        )
        tasks = await plan_research(deps, request, results)

        checklist_info = build_research_checklist_info(results)
        outcomes = await gather_bounded(
            tasks,
            lambda task: research_document(deps, history_id, task, checklist_info),
            abort_signal=deps.abort_signal,
        )
        failed = next((o for o in outcomes if not o.ok), None)
        if failed is not None:
            raise internal_error(
                ErrorCode.INTERNAL, failed.error_message or "Research failed", expose=True
            )
        findings = [outcome.value for outcome in outcomes]
        return await generate_answer(deps, request, results, findings, writer)

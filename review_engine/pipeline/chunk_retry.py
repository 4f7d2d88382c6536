"""Adaptive re-chunking for documents that overflow the model context.

Each iteration splits the document into ``total_chunks`` overlapping ranges
and runs one worker call per range, at most five at a time. If any range
overflows (and none failed for another reason), the document is split into
one more range and the whole document is tried again. Iterations are strictly
sequential.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from ..models import Chunk, ExtractedDocument, FinishReason, ProcessMode, StepStatus
from .chunker import make_chunks_by_count
from .concurrency import AbortSignal, gather_bounded, raise_if_aborted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ChunkRetryPolicy:
    """Retry bound and overlap for one call site.

    ``max_total_chunks`` additionally caps the chunk count itself.
    """

    max_retries: int
    text_overlap: int = 0
    image_overlap: int = 0
    max_total_chunks: int | None = None

    def overlap_for(self, document: ExtractedDocument) -> int:
        if document.process_mode is ProcessMode.IMAGE and document.image_data:
            return self.image_overlap
        return self.text_overlap


@dataclass
class ChunkOutcome(Generic[T]):
    """What a worker reports for one chunk."""

    finish_reason: FinishReason
    value: T | None = None
    error_message: str | None = None

    @classmethod
    def success(cls, value: T) -> "ChunkOutcome[T]":
        return cls(FinishReason.SUCCESS, value=value)

    @classmethod
    def content_length(cls) -> "ChunkOutcome[T]":
        return cls(FinishReason.CONTENT_LENGTH)

    @classmethod
    def error(cls, message: str) -> "ChunkOutcome[T]":
        return cls(FinishReason.ERROR, error_message=message)


@dataclass
class RetryState:
    retry_count: int = 0
    total_chunks: int = 1
    finish_reason: FinishReason = FinishReason.CONTENT_LENGTH


@dataclass
class ChunkRetryResult(Generic[T]):
    status: StepStatus
    values: list[T] = field(default_factory=list)
    total_chunks: int = 1
    retry_count: int = 0
    error_message: str | None = None
    finish_reason: FinishReason = FinishReason.SUCCESS

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


ChunkWorker = Callable[[Chunk], Awaitable[ChunkOutcome[Any]]]


def split_document(
    document: ExtractedDocument, total_chunks: int, overlap: int
) -> list[Chunk]:
    ranges = make_chunks_by_count(document.units, total_chunks, overlap)
    chunks = []
    for index, r in enumerate(ranges):
        text, images = document.slice(r.start, r.end)
        chunks.append(Chunk(chunk_index=index, total_chunks=len(ranges), text=text, images=images))
    return chunks


def too_large_message(document: ExtractedDocument) -> str:
    return (
        f"{document.display_original_name} could not be split into chunks small "
        "enough for the AI to process"
    )


async def run_chunk_retry(
    document: ExtractedDocument,
    worker: ChunkWorker,
    policy: ChunkRetryPolicy,
    *,
    initial_chunks: int = 1,
    abort_signal: AbortSignal | None = None,
) -> ChunkRetryResult[Any]:
    """Drive ``worker`` over ever finer splits of ``document`` until it fits.

    Successful values are returned in ascending chunk order regardless of
    completion order. The first non-overflow failure ends the loop.
    """
    state = RetryState(total_chunks=max(initial_chunks, 1))
    overlap = policy.overlap_for(document)

    while True:
        raise_if_aborted(abort_signal)
        chunks = split_document(document, state.total_chunks, overlap)
        outcomes = await gather_bounded(chunks, worker, abort_signal=abort_signal)

        failures = [o for o in outcomes if o.finish_reason is FinishReason.ERROR]
        if failures:
            state.finish_reason = FinishReason.ERROR
            message = next((f.error_message for f in failures if f.error_message), None)
            return ChunkRetryResult(
                StepStatus.FAILED,
                total_chunks=state.total_chunks,
                retry_count=state.retry_count,
                error_message=message or f"Failed to process {document.name}",
                finish_reason=FinishReason.ERROR,
            )

        if not any(o.finish_reason is FinishReason.CONTENT_LENGTH for o in outcomes):
            state.finish_reason = FinishReason.SUCCESS
            return ChunkRetryResult(
                StepStatus.SUCCESS,
                values=[o.value for o in outcomes],
                total_chunks=len(chunks),
                retry_count=state.retry_count,
            )

        state.finish_reason = FinishReason.CONTENT_LENGTH
        next_total = state.total_chunks + 1
        exhausted = (
            state.retry_count >= policy.max_retries
            or len(chunks) < state.total_chunks
            or (policy.max_total_chunks is not None and next_total > policy.max_total_chunks)
        )
        if exhausted:
            logger.warning(
                "Giving up on %s after %d retries at %d chunk(s)",
                document.name,
                state.retry_count,
                state.total_chunks,
            )
            return ChunkRetryResult(
                StepStatus.FAILED,
                total_chunks=state.total_chunks,
                retry_count=state.retry_count,
                error_message=too_large_message(document),
                finish_reason=FinishReason.CONTENT_LENGTH,
            )

        state.retry_count += 1
        state.total_chunks = next_total
        logger.info(
            "Content length exceeded for %s; retrying with %d chunks (retry %d/%d)",
            document.name,
            state.total_chunks,
            state.retry_count,
            policy.max_retries,
        )


def join_chunk_texts(document_name: str, texts: list[str]) -> str:
    """Concatenate chunk outputs in order, with headers when there are several."""
    if len(texts) == 1:
        return texts[0]
    total = len(texts)
    return "\n\n".join(
        f"[{document_name} - Chunk {index}/{total}]\n{text}"
        for index, text in enumerate(texts, start=1)
    )

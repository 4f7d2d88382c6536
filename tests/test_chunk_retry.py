from __future__ import annotations

import asyncio

import pytest

from review_engine.errors import AbortedError
from review_engine.models import ExtractedDocument, FinishReason, ProcessMode, StepStatus
from review_engine.pipeline.chunk_retry import (
    ChunkOutcome,
    ChunkRetryPolicy,
    join_chunk_texts,
    run_chunk_retry,
    split_document,
)
from review_engine.pipeline.concurrency import AbortSignal


def _document(length: int = 1000) -> ExtractedDocument:
    return ExtractedDocument(
        id="1", name="report.txt", path="report.txt", type="text/plain", text_content="x" * length
    )


class _Recorder:
    """Worker that overflows until the chunk size drops to ``fits``."""

    def __init__(self, fits: int | None = None, fail_at: int | None = None) -> None:
        self.fits = fits
        self.fail_at = fail_at
        self.calls: list[tuple[int, int, int]] = []

    async def __call__(self, chunk):
        size = len(chunk.text or "")
        self.calls.append((chunk.total_chunks, chunk.chunk_index, size))
        if self.fail_at is not None and chunk.total_chunks >= self.fail_at:
            return ChunkOutcome.error("worker blew up")
        if self.fits is not None and size > self.fits:
            return ChunkOutcome.content_length()
        # Finish later chunks first to check ordering.
        await asyncio.sleep(0.001 * (chunk.total_chunks - chunk.chunk_index))
        return ChunkOutcome.success(f"chunk-{chunk.chunk_index}")


def test_overflow_splits_into_two_overlapping_chunks():
    worker = _Recorder(fits=800)
    policy = ChunkRetryPolicy(max_retries=5, text_overlap=300)

    result = asyncio.run(run_chunk_retry(_document(), worker, policy))

    assert result.status is StepStatus.SUCCESS
    assert result.total_chunks == 2
    assert result.retry_count == 1
    assert result.values == ["chunk-0", "chunk-1"]
    assert worker.calls[0] == (1, 0, 1000)
    assert sorted(worker.calls[1:]) == [(2, 0, 500), (2, 1, 800)]


def test_success_on_first_pass_does_not_retry():
    worker = _Recorder()

    result = asyncio.run(run_chunk_retry(_document(), worker, ChunkRetryPolicy(max_retries=5)))

    assert result.ok
    assert result.retry_count == 0
    assert len(worker.calls) == 1


def test_retries_are_monotonic_and_bounded():
    worker = _Recorder(fits=0)
    policy = ChunkRetryPolicy(max_retries=3)

    result = asyncio.run(run_chunk_retry(_document(), worker, policy))

    assert result.status is StepStatus.FAILED
    assert result.finish_reason is FinishReason.CONTENT_LENGTH
    assert result.retry_count == 3
    totals = list(dict.fromkeys(total for total, _, _ in worker.calls))
    assert totals == [1, 2, 3, 4]
    assert "could not be split" in result.error_message


def test_max_total_chunks_caps_the_split():
    worker = _Recorder(fits=0)
    policy = ChunkRetryPolicy(max_retries=10, max_total_chunks=3)

    result = asyncio.run(run_chunk_retry(_document(), worker, policy))

    assert not result.ok
    assert max(total for total, _, _ in worker.calls) == 3


def test_error_is_terminal():
    worker = _Recorder(fits=600, fail_at=2)

    result = asyncio.run(run_chunk_retry(_document(), worker, ChunkRetryPolicy(max_retries=5)))

    assert result.status is StepStatus.FAILED
    assert result.finish_reason is FinishReason.ERROR
    assert result.error_message == "worker blew up"
    assert max(total for total, _, _ in worker.calls) == 2


def test_initial_chunks_seed_the_first_iteration():
    worker = _Recorder()

    result = asyncio.run(
        run_chunk_retry(_document(), worker, ChunkRetryPolicy(max_retries=5), initial_chunks=3)
    )

    assert result.values == ["chunk-0", "chunk-1", "chunk-2"]
    assert {total for total, _, _ in worker.calls} == {3}


def test_abort_stops_before_first_call():
    signal = AbortSignal()
    signal.abort()
    worker = _Recorder()

    with pytest.raises(AbortedError):
        asyncio.run(
            run_chunk_retry(_document(), worker, ChunkRetryPolicy(max_retries=1), abort_signal=signal)
        )
    assert worker.calls == []


def test_image_documents_split_by_page_with_image_overlap():
    document = ExtractedDocument(
        id="1",
        name="scan.pdf",
        path="scan.pdf",
        type="application/pdf",
        process_mode=ProcessMode.IMAGE,
        image_data=[f"img{i}" for i in range(6)],
    )
    policy = ChunkRetryPolicy(max_retries=1, text_overlap=300, image_overlap=3)

    chunks = split_document(document, 2, policy.overlap_for(document))

    assert [c.images for c in chunks] == [document.image_data[0:3], document.image_data[1:6]]
    assert all(c.text is None for c in chunks)


def test_join_chunk_texts_adds_headers_only_for_several():
    assert join_chunk_texts("a.txt", ["only"]) == "only"
    assert join_chunk_texts("a.txt", ["one", "two"]) == (
        "[a.txt - Chunk 1/2]\none\n\n[a.txt - Chunk 2/2]\ntwo"
    )


def test_abort_during_first_split_discards_it_and_never_resplits():
    signal = AbortSignal()
    calls: list[tuple[int, int]] = []

    async def worker(chunk):
        calls.append((chunk.total_chunks, chunk.chunk_index))
        signal.abort("user cancelled")
        return ChunkOutcome.content_length()

    with pytest.raises(AbortedError):
        asyncio.run(
            run_chunk_retry(_document(), worker, ChunkRetryPolicy(max_retries=5), abort_signal=signal)
        )

    assert calls == [(1, 0)]


def test_abort_mid_iteration_stops_later_chunks():
    signal = AbortSignal()
    calls: list[int] = []

    async def worker(chunk):
        calls.append(chunk.chunk_index)
        if chunk.chunk_index == 0:
            signal.abort("user cancelled")
        return ChunkOutcome.success(f"chunk-{chunk.chunk_index}")

    with pytest.raises(AbortedError):
        asyncio.run(
            run_chunk_retry(
                _document(),
                worker,
                ChunkRetryPolicy(max_retries=5),
                initial_chunks=3,
                abort_signal=signal,
            )
        )

    assert calls == [0]

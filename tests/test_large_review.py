from __future__ import annotations

import asyncio

from fakes import FakeAgent, Harness, Reply, review_items
from review_engine.llm.provider import APICallError
from review_engine.models import (
    ChecklistItem,
    DocumentCache,
    DocumentState,
    ExtractedDocument,
    QuestionAnswer,
    ReviewSettings,
    StepStatus,
)
from review_engine.pipeline.large_review import (
    SPLIT_NOTE,
    review_category_large,
    review_document,
    run_readiness_loop,
    summarize_documents,
)
from review_engine.storage import InMemoryReviewRepository

CHECKLISTS = [ChecklistItem(id=1, content="has a title"), ChecklistItem(id=2, content="is signed")]


def _document(doc_id: str = "1", text: str = "x" * 1000) -> ExtractedDocument:
    return ExtractedDocument(
        id=doc_id, name=f"doc{doc_id}.txt", path=f"doc{doc_id}.txt", type="text/plain", text_content=text
    )


def _summary_agent() -> FakeAgent:
    return FakeAgent(
        handler=lambda message, output, context: Reply(
            object={"topic_and_summary_list": [{"topic": "Intro", "summary": "About things"}]}
        )
    )


def _individual_items(message, output, context):
    return Reply(object=[{"checklist_id": c.id, "comment": f"seen {c.id}"} for c in context.checklist_items])


def test_summarize_documents_builds_states():
    harness = Harness(agents={"document-summarization": _summary_agent()})

    result = asyncio.run(summarize_documents(harness.deps(), [_document()], CHECKLISTS))

    assert result.ok
    [state] = result.value
    assert state.document.id == "1"
    assert state.topics[0].topic == "Intro"


def test_summarize_rejects_empty_document():
    harness = Harness(agents={"document-summarization": _summary_agent()})

    result = asyncio.run(
        summarize_documents(harness.deps(), [_document(text="   ")], CHECKLISTS)
    )

    assert result.status is StepStatus.FAILED
    assert result.error_message.split("\n") == [
        "・has a title:The document has no content: doc1.txt",
        "・is signed:The document has no content: doc1.txt",
    ]


def test_readiness_loop_collects_answers_until_ready():
    first = FakeAgent(
        replies=[
            Reply(
                object={
                    "additional_questions": [
                        {"document_id": "1", "questions": ["Who signed it?"]},
                        {"document_id": "unknown", "questions": ["ignored?"]},
                    ]
                }
            )
        ]
    )
    answers = FakeAgent(
        replies=[Reply(object={"answers": [{"question": "Who signed it?", "answer": "Alice"}]})]
    )
    subsequent = FakeAgent(replies=[Reply(object={"ready": True, "additional_questions": []})])
    harness = Harness(
        agents={
            "review-readiness-first": first,
            "question-answer": answers,
            "review-readiness-subsequent": subsequent,
        }
    )
    states = [DocumentState(document=_document())]

    result = asyncio.run(
        run_readiness_loop(harness.deps(), states, CHECKLISTS, ReviewSettings())
    )

    assert result.ok
    assert result.value[0].prior_qna == [QuestionAnswer(question="Who signed it?", answer="Alice")]
    assert len(answers.calls) == 1
    assert "1. Who signed it?" in answers.calls[0].message.text
    assert "Q: Who signed it?\nA: Alice" in subsequent.calls[0].message.text


def test_readiness_loop_stops_at_iteration_cap():
    asking = FakeAgent(
        handler=lambda message, output, context: Reply(
            object={"ready": False, "additional_questions": [{"document_id": "1", "questions": ["More?"]}]}
        )
    )
    answers = FakeAgent(
        handler=lambda message, output, context: Reply(
            object={"answers": [{"question": "More?", "answer": "Yes"}]}
        )
    )
    harness = Harness(
        agents={
            "review-readiness-first": asking,
            "review-readiness-subsequent": asking,
            "question-answer": answers,
        }
    )
    harness.config.readiness_max_iterations = 2

    result = asyncio.run(
        run_readiness_loop(
            harness.deps(), [DocumentState(document=_document())], CHECKLISTS, ReviewSettings()
        )
    )

    assert result.ok
    assert len(asking.calls) == 2
    assert len(result.value[0].prior_qna) == 2


def test_review_document_splits_on_overflow_and_records_parts():
    def individual(message, output, context):
        if not context.is_split_part:
            return APICallError("Bad request", status_code=400, response_body="context_length_exceeded")
        return _individual_items(message, output, context)

    agent = FakeAgent(handler=individual)
    harness = Harness(agents={"individual-review": agent})
    cache = asyncio.run(
        harness.repository.save_document_cache(
            DocumentCache(review_history_id="h1", document_id="1", file_name="doc1.txt", text_content="x")
        )
    )
    document = _document()
    document.cache_id = cache.id

    result = asyncio.run(
        review_document(harness.deps(), DocumentState(document=document), CHECKLISTS, ReviewSettings())
    )

    assert result.ok
    assert [r.document_name for r in result.value] == ["doc1.txt (part 1)", "doc1.txt (part 2)"]
    assert {r.original_name for r in result.value} == {"doc1.txt"}
    assert SPLIT_NOTE in agent.calls[-1].message.text
    assert asyncio.run(harness.repository.get_max_total_chunks_for_document(cache.id)) == 2


def test_review_document_reports_exhausted_split():
    agent = FakeAgent(handler=lambda message, output, context: Reply(object=None, finish_reason="length"))
    harness = Harness(agents={"individual-review": agent})
    harness.config.document_split_retry_limit = 1

    result = asyncio.run(
        review_document(
            harness.deps(), DocumentState(document=_document()), CHECKLISTS, ReviewSettings()
        )
    )

    assert result.status is StepStatus.FAILED
    assert result.error_message.startswith("・has a title:doc1.txt could not be split")


def test_category_runs_end_to_end_and_tolerates_one_failed_document():
    def individual(message, output, context):
        if "doc2.txt" in message.text:
            return APICallError("server exploded", status_code=500)
        return _individual_items(message, output, context)

    consolidate = FakeAgent(replies=[Reply(object=review_items([1, 2], evaluation="C"))])
    harness = Harness(
        agents={
            "document-summarization": _summary_agent(),
            "review-readiness-first": FakeAgent(replies=[Reply(object={"additional_questions": []})]),
            "individual-review": FakeAgent(handler=individual),
            "consolidate-review": consolidate,
        }
    )

    result = asyncio.run(
        review_category_large(
            harness.deps(),
            "h1",
            CHECKLISTS,
            [_document("1", "first doc"), _document("2", "second doc")],
            ReviewSettings(),
        )
    )

    assert result.ok
    text = consolidate.calls[0].message.text
    assert "### Document: doc1.txt" in text
    assert "### Document: doc2.txt" not in text
    rows = asyncio.run(harness.repository.get_review_results("h1"))
    assert [r.evaluation for r in rows] == ["C", "C"]


def test_category_fails_when_every_document_fails():
    harness = Harness(
        agents={
            "document-summarization": _summary_agent(),
            "review-readiness-first": FakeAgent(replies=[Reply(object={"additional_questions": []})]),
            "individual-review": FakeAgent(
                handler=lambda m, o, c: APICallError("down", status_code=503)
            ),
        }
    )

    result = asyncio.run(
        review_category_large(
            harness.deps(), "h1", CHECKLISTS, [_document("1", "text")], ReviewSettings()
        )
    )

    assert result.status is StepStatus.FAILED
    assert "・has a title:The AI API returned an error: down" in result.error_message


class _FailingSaveRepository(InMemoryReviewRepository):
    def __init__(self, failing_checklist_id: int) -> None:
        super().__init__()
        self.failing_checklist_id = failing_checklist_id

    async def save_large_document_result(self, result):
        if result.checklist_id == self.failing_checklist_id:
            raise RuntimeError("disk full")
        return await super().save_large_document_result(result)


class _FailingLookupRepository(InMemoryReviewRepository):
    async def get_max_total_chunks_for_document(self, cache_id):
        raise RuntimeError("database gone")


def _cached_document(harness: Harness) -> ExtractedDocument:
    cache = asyncio.run(
        harness.repository.save_document_cache(
            DocumentCache(review_history_id="h1", document_id="1", file_name="doc1.txt", text_content="x")
        )
    )
    document = _document()
    document.cache_id = cache.id
    return document


def test_review_document_reports_failed_result_save_per_item():
    harness = Harness(
        agents={"individual-review": FakeAgent(handler=_individual_items)},
        repository=_FailingSaveRepository(failing_checklist_id=2),
    )
    document = _cached_document(harness)

    result = asyncio.run(
        review_document(harness.deps(), DocumentState(document=document), CHECKLISTS, ReviewSettings())
    )

    assert result.status is StepStatus.FAILED
    assert result.error_message == "・is signed:An unexpected error occurred"


def test_review_document_reports_failed_split_lookup():
    agent = FakeAgent(handler=_individual_items)
    harness = Harness(agents={"individual-review": agent}, repository=_FailingLookupRepository())
    document = _cached_document(harness)

    result = asyncio.run(
        review_document(harness.deps(), DocumentState(document=document), CHECKLISTS, ReviewSettings())
    )

    assert result.status is StepStatus.FAILED
    assert result.error_message.splitlines() == [
        "・has a title:An unexpected error occurred",
        "・is signed:An unexpected error occurred",
    ]
    assert agent.calls == []

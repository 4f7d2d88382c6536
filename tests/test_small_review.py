from __future__ import annotations

import asyncio
import hashlib

from fakes import FakeAgent, Harness, Reply, review_items
from review_engine.llm.provider import APICallError
from review_engine.models import (
    ChecklistItem,
    EvaluationItem,
    EvaluationSettings,
    ExtractedDocument,
    ReviewSettings,
    StepStatus,
)
from review_engine.pipeline.small_review import (
    MISSING_RESULT_MESSAGE,
    build_review_message,
    file_identity,
    review_category_small,
)


def _documents() -> list[ExtractedDocument]:
    return [
        ExtractedDocument(id="1", name="a.txt", path="a.txt", type="text/plain", text_content="alpha"),
        ExtractedDocument(id="2", name="b.txt", path="b.txt", type="text/plain", text_content="beta"),
    ]


def _checklists(*ids: int) -> list[ChecklistItem]:
    return [ChecklistItem(id=i, content=f"check {i}") for i in ids]


def _run(harness, checklists, settings=None):
    return asyncio.run(
        review_category_small(
            harness.deps(), "h1", checklists, _documents(), settings or ReviewSettings()
        )
    )


def test_file_identity_hashes_document_ids():
    file_id, file_name = file_identity(_documents())

    assert file_id == hashlib.md5(b"1/2").hexdigest()
    assert file_name == "a.txt/b.txt"


def test_combined_message_lists_every_document():
    message = build_review_message(_documents())

    assert message.text.startswith("Please review the following documents: a.txt, b.txt")
    assert "# a.txt\nalpha" in message.text
    assert "# b.txt\nbeta" in message.text


def test_missing_items_are_requested_again():
    agent = FakeAgent(
        replies=[
            Reply(object=review_items([1, 3])),
            Reply(object=review_items([2], evaluation="B")),
        ]
    )
    harness = Harness(agents={"checklist-review": agent})

    result = _run(harness, _checklists(1, 2, 3))

    assert result.status is StepStatus.SUCCESS
    assert len(agent.calls) == 2
    assert [c.id for c in agent.calls[1].context.checklist_items] == [2]
    assert "- ID: 2 - check 2" in agent.calls[1].message.text
    rows = asyncio.run(harness.repository.get_review_results("h1"))
    assert [(r.checklist_id, r.evaluation) for r in rows] == [(1, "A"), (2, "B"), (3, "A")]
    assert {r.file_name for r in rows} == {"a.txt/b.txt"}


def test_unknown_ids_in_output_are_ignored():
    agent = FakeAgent(replies=[Reply(object=review_items([1, 42]))])
    harness = Harness(agents={"checklist-review": agent})

    result = _run(harness, _checklists(1))

    assert result.ok
    rows = asyncio.run(harness.repository.get_review_results("h1"))
    assert [r.checklist_id for r in rows] == [1]


def test_exhausted_attempts_name_the_missing_items():
    agent = FakeAgent(handler=lambda message, output, context: Reply(object=review_items([1])))
    harness = Harness(agents={"checklist-review": agent})

    result = _run(harness, _checklists(1, 2))

    assert result.status is StepStatus.FAILED
    assert len(agent.calls) == harness.config.review_max_attempts
    assert result.error_message == f"・check 2:{MISSING_RESULT_MESSAGE}"


def test_api_error_is_reported_per_checklist_item():
    agent = FakeAgent(replies=[APICallError("quota blown", status_code=500)])
    harness = Harness(agents={"checklist-review": agent})

    result = _run(harness, _checklists(1, 2))

    assert result.status is StepStatus.FAILED
    lines = result.error_message.split("\n")
    assert len(lines) == 2
    assert lines[0].startswith("・check 1:The AI API returned an error")
    assert "quota blown" in lines[1]


def test_custom_labels_constrain_evaluation():
    settings = ReviewSettings(
        evaluation_settings=EvaluationSettings(
            items=[EvaluationItem(label="OK"), EvaluationItem(label="NG")]
        )
    )
    agent = FakeAgent(
        replies=[
            Reply(object=review_items([1], evaluation="A")),
        ]
    )
    harness = Harness(agents={"checklist-review": agent})

    result = _run(harness, _checklists(1), settings)

    # "A" is not one of the configured labels, so the output is rejected.
    assert result.status is StepStatus.FAILED
    assert result.error_message.startswith("・check 1:")
    assert [item.label for item in agent.calls[0].context.evaluation_items] == ["OK", "NG"]

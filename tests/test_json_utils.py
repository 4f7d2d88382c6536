from __future__ import annotations

import pytest

from review_engine.llm.json_utils import (
    parse_json_response,
    parse_structured,
    validate_structured,
)
from review_engine.llm.provider import AgentParseError, NoObjectGeneratedError
from review_engine.models.outputs import PlanOutput, review_item_model


def test_parse_json_object_in_text():
    text = "Here is the result: {\"key\": \"value\"}. Thanks"
    result = parse_json_response(text)
    assert isinstance(result, dict)
    assert result["key"] == "value"


def test_parse_json_array_in_text():
    text = "Some preamble text [ {\"checklist_id\": 1, \"comment\": \"Looks fine\"} ] end"
    result = parse_json_response(text)
    assert isinstance(result, list)
    assert result[0]["checklist_id"] == 1


def test_parse_json_repairs_trailing_commas():
    result = parse_json_response("```json\n{\"a\": [1, 2,],}\n```")
    assert result == {"a": [1, 2]}


def test_parse_json_without_delimiters_raises():
    with pytest.raises(ValueError):
        parse_json_response("no json at all")


def test_validate_structured_checks_labels():
    item_type = list[review_item_model(["OK", "NG"])]

    items = validate_structured(
        [{"checklist_id": 1, "comment": "c", "evaluation": "OK"}], item_type
    )
    assert items[0].evaluation == "OK"

    with pytest.raises(AgentParseError):
        validate_structured(
            [{"checklist_id": 1, "comment": "c", "evaluation": "A"}], item_type
        )


def test_validate_structured_rejects_missing_object():
    with pytest.raises(NoObjectGeneratedError):
        validate_structured(None, PlanOutput)


def test_parse_structured_keeps_response_text_on_failure():
    with pytest.raises(AgentParseError) as exc_info:
        parse_structured("{\"tasks\": \"not a list\"}", PlanOutput)

    assert exc_info.value.response_text == "{\"tasks\": \"not a list\"}"


def test_parse_structured_rejects_empty_text():
    with pytest.raises(NoObjectGeneratedError):
        parse_structured("   ", PlanOutput)

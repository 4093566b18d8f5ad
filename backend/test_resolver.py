"""
Tests for answer-tree normalization and field value resolution.
"""

import json
from datetime import datetime, timezone

import pytest

from core.answers import AnswerShape, detect_shapes, find_answer_by_label, normalize_answers
from core.models import FormDesign, SystemField
from engine.resolver import coerce_by_question_type, resolve_field_value, resolve_identifier


SECTION_ARRAY = [{"responses": [{"questionId": "q1", "response": 42}]}]
SECTIONS_WRAPPER = {"sections": [{"responses": [{"questionId": "q1", "response": 42}]}]}
FLAT_MAP = {"q1": 42}


class TestAnswerShapes:
    """All stored answer shapes resolve to the same canonical map."""

    @pytest.mark.parametrize("tree", [
        SECTION_ARRAY,
        SECTIONS_WRAPPER,
        FLAT_MAP,
        json.dumps(SECTION_ARRAY),
        json.dumps(SECTIONS_WRAPPER),
        json.dumps(FLAT_MAP),
    ])
    def test_every_shape_resolves_identically(self, tree, make_response):
        response = make_response("r1", answers=tree)
        assert resolve_field_value(response, "q1") == 42

    def test_detect_shapes(self):
        assert detect_shapes(SECTION_ARRAY) == [AnswerShape.section_array]
        assert detect_shapes(SECTIONS_WRAPPER) == [AnswerShape.sections_wrapper, AnswerShape.flat_map]
        assert detect_shapes(FLAT_MAP) == [AnswerShape.flat_map]
        assert detect_shapes("not json") == []

    def test_first_non_null_value_wins(self):
        tree = [{"responses": [
            {"questionId": "q1", "response": None},
            {"questionId": "q1", "response": "second"},
            {"questionId": "q1", "response": "third"},
        ]}]
        assert normalize_answers(tree) == {"q1": "second"}

    def test_sections_take_precedence_over_flat_keys(self):
        tree = {
            "sections": [{"responses": [{"questionId": "q1", "response": "from-section"}]}],
            "q1": "from-flat",
            "q2": "only-flat",
        }
        answers = normalize_answers(tree)
        assert answers["q1"] == "from-section"
        assert answers["q2"] == "only-flat"

    def test_unparsable_payload_has_no_answers(self, make_response):
        response = make_response("r1", answers="{broken")
        assert resolve_field_value(response, "q1") is None

    def test_find_answer_by_label_matches_substring(self):
        tree = [{"responses": [
            {"questionId": "q9", "label": "Country of origin", "response": "Kenya"},
        ]}]
        assert find_answer_by_label(tree, "country") == "Kenya"
        assert find_answer_by_label(tree, "COUNTRY OF ORIGIN") == "Kenya"
        assert find_answer_by_label(tree, "city") is None
        assert find_answer_by_label(tree, "") is None


class TestSystemFields:

    def test_system_field_takes_precedence(self, make_response):
        response = make_response("r7", answers={"q1": "ignored"})
        assert resolve_field_value(response, "q1", SystemField.response_id) == "r7"

    def test_submission_date_is_utc(self, make_response):
        response = make_response("r1", created_at="2024-03-01T12:00:00+02:00")
        value = resolve_field_value(response, system_field="submissionDate")
        assert value == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_unknown_system_field_is_none(self, make_response):
        response = make_response("r1")
        assert resolve_field_value(response, system_field="applicantName") is None

    def test_missing_field_is_none(self, make_response):
        assert resolve_field_value(make_response("r1", answers={"q1": 1}), "q2") is None
        assert resolve_field_value(make_response("r1", answers={"q1": 1})) is None


class TestQuestionTypeCoercion:

    @pytest.mark.parametrize("qtype,raw,expected", [
        ("Paragraph", json.dumps({"blocks": [{"text": "a"}, {"text": "b"}]}), "a\nb"),
        ("Paragraph", {"blocks": [{"text": "only"}]}, "only"),
        ("Paragraph", "plain text", "plain text"),
        ("Phone Number", "2348012345678", "+2348012345678"),
        ("Phone Number", "+44123", "+44123"),
        ("Checkbox", [{"option": "A", "checked": True}, {"option": "B", "checked": False}], ["A"]),
        ("Date", {"date": "2024-01-15"}, "2024-01-15"),
        ("DateTime", {"date": "2024-01-15", "time": "08:30"}, "2024-01-15T08:30:00"),
        ("DateTime", {"date": "2024-01-15"}, {"date": "2024-01-15"}),
        ("DateRange", {"start": "2024-01-01", "end": "2024-01-10"}, 9),
        ("DateRange", {"start": "2024-01-01T00:00:00Z", "end": "2024-01-02T01:00:00Z"}, 2),
        ("DateRange", {"start": "2024-01-10", "end": "2024-01-01"}, 9),
        ("DateRange", {"start": "garbage", "end": "2024-01-02"}, 0),
        ("From Database", [{"response": "x"}, {"response": "y"}], ["x", "y"]),
        ("Lookup", [{"response": 3}], [3]),
        ("Short Text", "hello", "hello"),
        (None, "raw", "raw"),
    ])
    def test_coercion(self, qtype, raw, expected):
        assert coerce_by_question_type(qtype, raw) == expected

    def test_coercion_uses_form_design(self, make_response, make_design):
        design = make_design({"id": "q1", "type": "Checkbox"})
        response = make_response("r1", answers={"q1": [{"option": "Yes", "checked": True}]})
        assert resolve_field_value(response, "q1", form_design=design) == ["Yes"]

    def test_no_design_returns_raw(self, make_response):
        raw = [{"option": "Yes", "checked": True}]
        response = make_response("r1", answers={"q1": raw})
        assert resolve_field_value(response, "q1") == raw

    def test_question_missing_from_design_returns_raw(self, make_response, make_design):
        design = make_design({"id": "other", "type": "Phone Number"})
        response = make_response("r1", answers={"q1": "123"})
        assert resolve_field_value(response, "q1", form_design=design) == "123"

    def test_legacy_bare_section_list_design(self, make_response):
        design = FormDesign.model_validate([{"questions": [{"id": "q1", "type": "Phone Number"}]}])
        response = make_response("r1", answers={"q1": "123"})
        assert resolve_field_value(response, "q1", form_design=design) == "+123"


class TestIdentifierResolution:

    def test_defaults_to_response_id(self, make_response):
        assert resolve_identifier(make_response("r1"), None, None) == "r1"

    @pytest.mark.parametrize("identifier", ["$responseId", "$RESPONSEID", "$responseid"])
    def test_dollar_prefix_selects_system_field(self, identifier, make_response):
        assert resolve_identifier(make_response("r1"), identifier, None) == "r1"

    def test_submission_date_identifier(self, make_response):
        response = make_response("r1", created_at="2024-01-15T10:00:00Z")
        assert resolve_identifier(response, "$submissionDate", None) == response.created_at

    def test_unknown_system_identifier(self, make_response):
        assert resolve_identifier(make_response("r1"), "$nope", None) is None

    def test_field_identifier(self, make_response):
        response = make_response("r1", answers={"name": "Ada"})
        assert resolve_identifier(response, "name", None) == "Ada"

"""
Tests for the filter engine.
"""

import logging

import pytest

from core.models import Filter
from engine.fallbacks import FallbackPolicy
from engine.filters import SUPPORTED_OPERATORS, apply_filters, evaluate_condition


def _filter(operator, value=None, field_id="q1", **kw):
    return Filter(id="f", form_id="f1", field_id=field_id, operator=operator, value=value, **kw)


class TestOperators:
    """Single-predicate semantics."""

    @pytest.mark.parametrize("value,operator,filter_value,expected", [
        # equality: numeric first, then case-insensitive text
        ("5", "eq", 5, True),
        (5.0, "equals", "5", True),
        (" Kenya ", "eq", "kenya", True),
        ("Kenya", "neq", "Ghana", True),
        ("Kenya", "not_equals", "KENYA", False),
        (["A", "B"], "eq", "b", True),
        (["A", "B"], "eq", ["c", "a"], True),
        (["A", "B"], "neq", "c", True),
        (True, "eq", "true", True),
        # numeric
        ("10", "gt", 5, True),
        (10, "greater_than", 10, False),
        (10, "gte", "10", True),
        (3, "lt", 4, True),
        (4, "less_than_equal", 4, True),
        ("abc", "gt", 1, False),
        (5, "lt", "n/a", False),
        # strings
        ("Hello World", "contains", "WORLD", True),
        ("Hello", "starts_with", "he", True),
        ("Hello", "ends_with", "LO", True),
        (["alpha", "beta"], "contains", "et", True),
        ("Hello", "contains", "xyz", False),
        # sets
        ("b", "in", ["a", "B"], True),
        ("c", "in", ["a", "b"], False),
        ("a", "in", "a", False),
        ("c", "not_in", ["a", "b"], True),
        ("a", "not_in", ["a", "b"], False),
        ("a", "not_in", "a", True),
        (["x", "y"], "in", ["y"], True),
        (2, "in", ["2", "3"], True),
        # dates
        ("2024-01-15T08:00:00Z", "date_eq", "2024-01-15T23:00:00Z", True),
        ("2024-01-15", "date_before", "2024-01-16", True),
        ("2024-01-15T10:00:00Z", "date_before", "2024-01-15T09:00:00Z", False),
        ("2024-01-15T10:00:00Z", "date_after", "2024-01-15T09:00:00Z", True),
        ("not a date", "date_after", "2024-01-01", False),
        ("2024-01-15", "date_range", {"from": "2024-01-01", "to": "2024-01-31"}, True),
        ("2024-01-31", "date_range", {"from": "2024-01-01", "to": "2024-01-31"}, True),
        ("2024-02-01", "date_range", {"from": "2024-01-01", "to": "2024-01-31"}, False),
        ("2024-01-15", "date_range", {"from": "2024-01-01"}, False),
        # booleans
        (True, "is_true", None, True),
        ("TRUE", "is_true", None, True),
        ("false", "is_false", None, True),
        ("yes", "is_true", None, False),
    ])
    def test_operator(self, value, operator, filter_value, expected):
        assert evaluate_condition(value, operator, filter_value) is expected

    @pytest.mark.parametrize("value,expected", [
        (None, True),
        ("", True),
        ([], True),
        ("x", False),
        ([1], False),
        (0, False),
    ])
    def test_null_operators(self, value, expected):
        assert evaluate_condition(value, "is_null", None) is expected
        assert evaluate_condition(value, "is_empty", None) is expected
        assert evaluate_condition(value, "is_not_null", None) is (not expected)
        assert evaluate_condition(value, "is_not_empty", None) is (not expected)

    @pytest.mark.parametrize("operator", sorted(
        SUPPORTED_OPERATORS - {"is_null", "is_empty", "is_not_null", "is_not_empty"}
    ))
    def test_missing_value_fails_every_other_operator(self, operator):
        assert evaluate_condition(None, operator, "x") is False


class TestUnknownOperator:

    def test_unknown_operator_passes_and_warns(self, caplog):
        caplog.set_level(logging.WARNING, logger="widget_engine")
        assert evaluate_condition("anything", "sounds_like", "x") is True
        assert any("sounds_like" in r.getMessage() for r in caplog.records)

    def test_strict_policy_rejects_unknown_operator(self):
        strict = FallbackPolicy(unknown_operator_passes=False)
        assert evaluate_condition("anything", "sounds_like", "x", strict) is False

    def test_unknown_operator_keeps_every_response(self, make_response):
        responses = [make_response(f"r{i}", answers={"q1": i}) for i in range(3)]
        kept = apply_filters(responses, [_filter("sounds_like", 1)], {})
        assert kept == responses


class TestApplyFilters:

    @pytest.fixture
    def responses(self, make_response):
        return [
            make_response("r1", answers={"q1": "Kenya", "age": "30"}),
            make_response("r2", answers={"q1": "Ghana", "age": "17"}),
            make_response("r3", answers={"q1": "Kenya", "age": None}),
            make_response("r4", form_id="f2", answers={"q1": "Kenya", "age": "45"}),
        ]

    def test_no_filters_is_identity(self, responses):
        assert apply_filters(responses, [], {}) == responses
        assert apply_filters(responses, None, {}) == responses

    def test_filters_are_a_conjunction(self, responses):
        kept = apply_filters(
            responses, [_filter("eq", "kenya"), _filter("gte", 18, field_id="age")], {}
        )
        assert [r.id for r in kept] == ["r1", "r4"]

    def test_adding_a_filter_never_grows_the_result(self, responses):
        base = [_filter("eq", "kenya")]
        narrower = base + [_filter("is_not_null", field_id="age")]
        first = apply_filters(responses, base, {})
        second = apply_filters(responses, narrower, {})
        assert set(r.id for r in second) <= set(r.id for r in first)

    def test_system_field_filter(self, responses):
        kept = apply_filters(
            responses,
            [Filter(form_id="f1", system_field="responseId", operator="in", value=["r2", "r3"])],
            {},
        )
        assert [r.id for r in kept] == ["r2", "r3"]

    def test_filter_uses_response_form_design(self, make_response, make_design):
        design = make_design({"id": "q1", "type": "Checkbox"})
        response = make_response("r1", answers={"q1": [
            {"option": "Red", "checked": True}, {"option": "Blue", "checked": False},
        ]})
        assert apply_filters([response], [_filter("eq", "red")], {"f1": design}) == [response]
        assert apply_filters([response], [_filter("eq", "blue")], {"f1": design}) == []

"""Tests for the shared rule engine used by segments, conditions and personalization."""
import pytest

from lifecycle_engine.engine.segmentation import (
    apply_operator,
    evaluate_segment_batch,
    evaluate_segment_filters,
    lookup_path,
    normalize_filter_logic,
    resolve_field_value,
)
from lifecycle_engine.models.domain import SegmentFilter

from conftest import make_account, make_user


@pytest.fixture
def record():
    return make_user(properties={"company": {"size": 40}, "role": "Admin"}).to_record()


class TestOperators:
    @pytest.mark.parametrize("operator,actual,expected,values,outcome", [
        ("equals", "Growth", "growth", None, True),
        ("equals", 14, "14", None, True),
        ("equals", True, "true", None, True),
        ("not_equals", "Growth", "Starter", None, True),
        ("contains", ["Dashboard", "Reports"], "report", None, True),
        ("not_contains", "ada@example.com", "gmail", None, True),
        ("starts_with", "ada@example.com", "ADA", None, True),
        ("ends_with", "ada@example.com", ".com", None, True),
        ("greater_than", 14, 10, None, True),
        ("greater_than", "abc", 10, None, False),
        ("less_or_equal", 10, "10", None, True),
        ("is_set", "", None, None, False),
        ("is_not_set", None, None, None, True),
        ("in_list", "growth", None, ["Starter", "Growth"], True),
        ("not_in_list", "Trial", None, ["Starter", "Growth"], True),
        ("between", 15, None, [10, 20], True),
        ("between", 15, None, [10], False),
        ("matches_regex", "ada@example.com", r"@example\.com$", None, True),
        ("matches_regex", "anything", "([", None, False),
        ("no_such_operator", "x", "x", None, False),
    ])
    def test_operator(self, operator, actual, expected, values, outcome):
        assert apply_operator(operator, actual, expected, values) is outcome


class TestFieldResolution:
    def test_direct_field(self, record):
        rule = SegmentFilter(field="plan", operator="equals", value="Growth")
        assert resolve_field_value(rule, record) == "Growth"

    def test_nested_property(self, record):
        rule = SegmentFilter(field="properties.company.size", operator="equals")
        assert resolve_field_value(rule, record) == 40

    def test_account_source(self, record):
        rule = SegmentFilter(field="arr", operator="equals", field_source="account")
        assert resolve_field_value(rule, record, make_account().to_record()) == 1188
        assert resolve_field_value(rule, record, None) is None

    def test_lookup_path_falls_back_to_dotted_walk(self):
        assert lookup_path({"a": {"b": 2}}, "a.b") == 2
        assert lookup_path({"a": 1}, "a.b") is None


class TestFilterLogic:
    @pytest.mark.parametrize("raw,expected", [("or", "OR"), ("OR", "OR"), ("and", "AND"), (None, "AND"), ("xor", "AND")])
    def test_normalize(self, raw, expected):
        assert normalize_filter_logic(raw) == expected

    def test_empty_filters_match_everyone(self, record):
        assert evaluate_segment_filters([], "AND", record)

    def test_and_requires_all(self, record):
        filters = [
            {"field": "plan", "operator": "equals", "value": "Growth"},
            {"field": "loginFrequency30d", "operator": "greater_than", "value": 20},
        ]
        assert not evaluate_segment_filters(filters, "and", record)
        assert evaluate_segment_filters(filters, "or", record)

    def test_property_rule_from_stored_json(self, record):
        filters = [{"field": "properties.role", "operator": "in_list", "values": ["admin", "owner"]}]
        assert evaluate_segment_filters(filters, "AND", record)


class TestBatch:
    def test_entered_and_exited_against_existing_members(self):
        users = [
            make_user(id="u_1", plan="Growth").to_record(),
            make_user(id="u_2", plan="Starter").to_record(),
            make_user(id="u_3", plan="Growth").to_record(),
        ]
        filters = [SegmentFilter(field="plan", operator="equals", value="Growth")]
        result = evaluate_segment_batch(filters, "AND", users, {}, existing_member_ids={"u_2", "u_3"})
        assert result.matched == ["u_1", "u_3"]
        assert result.entered == ["u_1"]
        assert result.exited == ["u_2"]
        assert result.total == 3

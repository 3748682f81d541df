"""Tests for the condition evaluator."""

import pytest

from aether.automation.errors import ConditionEvaluationError, ValidationError
from aether.automation.evaluator import (
    MISSING,
    ConditionEvaluator,
    describe,
    get_nested_value,
    strict_equal,
    validate_conditions,
)
from aether.automation.types import Event


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


def pin_event(pin=17, value=1, **extra):
    data = {"pin": pin, "value": value}
    data.update(extra)
    return Event(name="pin_change", data=data)


class TestHelpers:
    """Tests for path lookup and strict equality."""

    def test_nested_path(self):
        """Dots walk mappings, digits index lists."""
        data = {"sensor": {"readings": [10, 20]}}
        assert get_nested_value(data, "sensor.readings.1") == 20
        assert get_nested_value(data, "sensor.missing") is MISSING
        assert get_nested_value(data, "sensor.readings.9") is MISSING

    def test_none_is_not_missing(self):
        """A present None value is returned as None."""
        assert get_nested_value({"a": None}, "a") is None

    def test_strict_equal_bool_vs_int(self):
        """No implicit coercion between bool and numbers."""
        assert strict_equal(1, 1.0)
        assert not strict_equal(True, 1)
        assert not strict_equal(0, False)
        assert not strict_equal("1", 1)


class TestCompound:
    """Tests for all/any nodes."""

    def test_empty_all_is_true(self, evaluator):
        assert evaluator.evaluate({"all": []}, pin_event()) is True

    def test_empty_any_is_false(self, evaluator):
        assert evaluator.evaluate({"any": []}, pin_event()) is False

    def test_no_conditions_is_false(self, evaluator):
        assert evaluator.evaluate(None, pin_event()) is False

    def test_nested_tree(self, evaluator):
        """any inside all."""
        conditions = {
            "all": [
                {"event": "pin_change"},
                {"any": [{"pin": 4}, {"pin": 17}]},
            ]
        }
        assert evaluator.evaluate(conditions, pin_event(pin=17))
        assert not evaluator.evaluate(conditions, pin_event(pin=5))

    def test_schedule_node_never_matches_events(self, evaluator):
        """Schedule conditions belong to the scheduler only."""
        conditions = {"schedule": {"time": "07:30"}}
        assert evaluator.evaluate(conditions, pin_event()) is False

    def test_two_shapes_is_an_error(self, evaluator):
        with pytest.raises(ConditionEvaluationError):
            evaluator.evaluate({"all": [], "any": []}, pin_event())

    def test_all_must_be_a_list(self, evaluator):
        with pytest.raises(ConditionEvaluationError):
            evaluator.evaluate({"all": {"pin": 1}}, pin_event())


class TestLeaf:
    """Tests for leaf comparisons."""

    def test_event_guard(self, evaluator):
        """event key compares against the event name."""
        leaf = {"event": "pin_change", "pin": 17, "value": 1}
        assert evaluator.evaluate(leaf, pin_event())
        assert not evaluator.evaluate(leaf, Event(name="other", data={"pin": 17, "value": 1}))

    def test_bool_value_does_not_match_int(self, evaluator):
        assert not evaluator.evaluate({"value": 1}, pin_event(value=True))

    def test_missing_field_fails(self, evaluator):
        assert not evaluator.evaluate({"temperature": 20}, pin_event())

    def test_nested_field(self, evaluator):
        event = Event(name="sensor", data={"room": {"temp": 21.5}})
        assert evaluator.evaluate({"room.temp": {"$gte": 21}}, event)

    @pytest.mark.parametrize(
        "expected,actual,result",
        [
            ({"$eq": 5}, 5, True),
            ({"$ne": 5}, 5, False),
            ({"$ne": 5}, 6, True),
            ({"$gt": 5}, 6, True),
            ({"$gt": 5}, 5, False),
            ({"$gte": 5}, 5, True),
            ({"$lt": 5}, 4, True),
            ({"$lte": 5}, 6, False),
            ({"$in": [1, 2, 3]}, 2, True),
            ({"$in": [1, 2, 3]}, True, False),
            ({"$nin": [1, 2, 3]}, 4, True),
        ],
    )
    def test_operators(self, evaluator, expected, actual, result):
        assert evaluator.compare_values(actual, expected) is result

    def test_first_operator_wins(self, evaluator):
        """$eq is checked before $gt, the rest is ignored."""
        assert evaluator.compare_values(1, {"$gt": 5, "$eq": 1}) is True

    def test_unrecognized_keys_ignored_next_to_operator(self, evaluator):
        """Only the recognized operator decides, extra keys do not count."""
        assert evaluator.compare_values(6, {"$gt": 5, "foo": 1}) is True
        assert evaluator.compare_values(5, {"$gt": 5, "bar": 5}) is False
        assert evaluator.compare_values(2, {"note": "x", "$in": [1, 2]}) is True

    def test_ordering_with_missing_or_incomparable(self, evaluator):
        assert evaluator.compare_values(MISSING, {"$gt": 1}) is False
        assert evaluator.compare_values(None, {"$lt": 1}) is False
        assert evaluator.compare_values("abc", {"$gt": 1}) is False

    def test_in_requires_list(self, evaluator):
        with pytest.raises(ConditionEvaluationError):
            evaluator.compare_values(1, {"$in": 1})

    def test_mapping_without_operators_compares_by_value(self, evaluator):
        assert evaluator.compare_values({"a": 1}, {"a": 1}) is True
        assert evaluator.compare_values({"a": 2}, {"a": 1}) is False


class TestValidateConditions:
    """Tests for static validation of condition trees."""

    def test_valid_tree(self):
        validate_conditions({
            "any": [
                {"schedule": {"time": "07:30", "days": [1, 2, 3]}},
                {"event": "pin_change", "value": {"$in": [0, 1]}},
            ]
        })

    def test_error_carries_path(self):
        with pytest.raises(ValidationError, match=r"conditions\.all\[1\]"):
            validate_conditions({"all": [{"pin": 1}, {"all": [], "any": []}]})

    def test_bad_schedule(self):
        with pytest.raises(ValidationError, match="HH:MM"):
            validate_conditions({"schedule": {"time": "7h30"}})

    def test_in_operand_checked(self):
        with pytest.raises(ValidationError):
            validate_conditions({"pin": {"$nin": 3}})

    def test_describe(self):
        text = describe({"all": [{"pin": 17}, {"any": []}]})
        assert "pin=17" in text
        assert "<never>" in text

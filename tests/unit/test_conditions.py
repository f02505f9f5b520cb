import pytest

from crmflow.conditions import (
    evaluate_all,
    evaluate_condition,
    goal_reached,
    matches,
    resolve_field,
)
from crmflow.graph import Condition, Criteria

CONTACT = {
    "firstName": "Ada",
    "email": "ada@example.com",
    "tags": ["VIP", "Newsletter"],
    "leadScore": "42",
    "subscribed": "yes",
    "lastEmailOpened": None,
    "company": {"name": "Analytical Engines", "size": 120},
}


@pytest.mark.parametrize(
    "field, operator, value, expected",
    [
        ("firstName", "equals", "ada", True),
        ("firstName", "not_equals", "Grace", True),
        ("email", "contains", "@example", True),
        ("email", "not_contains", "@corp", True),
        ("tags", "contains", "vip", True),
        ("tags", "contains", "VI", False),
        ("leadScore", "greater_than", 40, True),
        ("leadScore", "less_than", "40", False),
        ("firstName", "greater_than", 1, False),
        ("lastEmailOpened", "is_empty", None, True),
        ("missing", "is_empty", None, True),
        ("email", "is_not_empty", None, True),
        ("subscribed", "is_true", None, True),
        ("subscribed", "is_false", None, False),
        ("company.name", "equals", "analytical engines", True),
        ("company.size", "greater_than", 100, True),
        ("firstName", "in", "Ada, Grace", True),
        ("firstName", "in", ["Grace", "Linus"], False),
        ("firstName", "not_in", ["Grace"], True),
        ("missing", "not_in", ["x"], True),
    ],
)
def test_operators(field, operator, value, expected):
    condition = Condition(field=field, operator=operator, value=value)
    assert evaluate_condition(condition, CONTACT) is expected


def test_resolve_field_with_dotted_path():
    assert resolve_field(CONTACT, "company.size") == 120
    assert resolve_field(CONTACT, "company.missing") is None
    assert resolve_field(CONTACT, "firstName.length") is None


def test_match_all_and_any():
    conditions = [
        Condition(field="firstName", operator="equals", value="Ada"),
        Condition(field="leadScore", operator="greater_than", value=100),
    ]
    assert evaluate_all(conditions, CONTACT, match_all=True) is False
    assert evaluate_all(conditions, CONTACT, match_all=False) is True


def test_empty_clause_list_is_satisfied():
    assert evaluate_all([], CONTACT) is True


def test_matches_without_criteria():
    assert matches(None, CONTACT) is True
    assert matches(Criteria(conditions=[]), CONTACT) is True


def test_goal_needs_at_least_one_clause():
    assert goal_reached(None, CONTACT) is False
    assert goal_reached(Criteria(), CONTACT) is False
    goal = Criteria(conditions=[Condition(field="tags", operator="contains", value="VIP")])
    assert goal_reached(goal, CONTACT) is True

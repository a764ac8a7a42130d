import pytest

from apiflow.context import ExecutionContext
from apiflow.contracts import ConditionConfig, ConditionRule
from apiflow.errors import ConditionEvaluationError
from apiflow.expressions import CompiledCondition, ConditionEvaluator


@pytest.fixture
def context() -> ExecutionContext:
    ctx = ExecutionContext({"min_total": 5, "region": "eu"})
    ctx.set_output(0, "get-user", {"id": 1, "active": True, "roles": ["admin"], "email": None})
    ctx.set_output(1, "orders", {"count": 3, "items": [{"total": 10}, {"total": 2}]})
    return ctx


@pytest.mark.parametrize(
    "expression,expected",
    [
        ("previous.count > 0", True),
        ("previous.count == 3 and steps['get-user'].active", True),
        ("previous.count > 5 or params.region == 'eu'", True),
        ("not steps['get-user'].active", False),
        ("'admin' in steps['get-user'].roles", True),
        ("'owner' not in steps['get-user'].roles", True),
        ("len(previous.items) == 2", True),
        ("contains(steps['get-user'].roles, 'admin')", True),
        ("previous.items[0].total >= params.min_total", True),
        ("1 < previous.count < 3", False),
        ("steps['get-user'].email == null", True),
        ("steps['get-user'].active == true", True),
        ("{{ steps.get-user.id }} == 1", True),
        ("{{ steps.0.roles }} == ['admin']", True),
        ("exists(previous.count)", True),
        ("exists(previous.missing)", False),
        ("exists(steps['get-user'].email)", False),
        ("not exists(steps.nothing.id)", True),
    ],
)
def test_expressions(context, expression, expected):
    assert ConditionEvaluator().evaluate(expression, context) is expected


@pytest.mark.parametrize(
    "expression",
    [
        "__import__('os').system('true')",
        "previous.count.bit_length()",
        "[x for x in previous.items]",
        "lambda: 1",
        "previous.count + 1 > 2",
        "globals",
        "len(previous.items, key=1)",
        "",
    ],
)
def test_disallowed_expressions_are_rejected(context, expression):
    with pytest.raises(ConditionEvaluationError):
        ConditionEvaluator().evaluate(expression, context)


def test_missing_reference_is_an_error(context):
    with pytest.raises(ConditionEvaluationError):
        ConditionEvaluator().evaluate("previous.missing > 0", context)


def test_type_mismatch_is_an_error(context):
    with pytest.raises(ConditionEvaluationError):
        ConditionEvaluator().evaluate("params.region > 1", context)


def test_expression_length_is_bounded(context):
    evaluator = ConditionEvaluator(max_length=20)
    with pytest.raises(ConditionEvaluationError):
        evaluator.evaluate("previous.count > 0 and previous.count < 10", context)


@pytest.mark.parametrize(
    "rule,expected",
    [
        (ConditionRule(field="previous.count", operator="greater_than", value=2), True),
        (ConditionRule(field="previous.count", operator="less_or_equal", value=2), False),
        (ConditionRule(field="steps.get-user.active", value=True), True),
        (ConditionRule(field="{{ steps.0.roles }}", operator="contains", value="admin"), True),
        (ConditionRule(field="params.region", operator="not_equals", value="us"), True),
        (ConditionRule(field="previous.missing", operator="exists"), False),
        (ConditionRule(field="previous.missing", operator="not_exists"), True),
        (ConditionRule(field="steps.get-user.email", operator="greater_than", value=1), False),
    ],
)
def test_structured_rules(context, rule, expected):
    assert ConditionEvaluator().evaluate(ConditionConfig(rule=rule), context) is expected


def test_rule_on_missing_field_is_an_error(context):
    rule = ConditionRule(field="previous.missing", operator="equals", value=1)
    with pytest.raises(ConditionEvaluationError):
        ConditionEvaluator().evaluate(rule, context)


def test_compiled_condition_lists_references():
    condition = CompiledCondition("{{ steps.0.id }} > 1 and exists(previous.data[0])")
    assert condition.references() == [["steps", "0", "id"], ["previous", "data", 0]]


def test_check_reports_unknown_steps():
    evaluator = ConditionEvaluator()

    assert evaluator.check("steps.fetch.ok", ["fetch", 0], has_previous=True) == []
    problems = evaluator.check("steps.later.ok or previous.x", ["fetch"], has_previous=False)
    assert len(problems) == 2
    assert evaluator.check("previous.x +", ["fetch"], has_previous=True)

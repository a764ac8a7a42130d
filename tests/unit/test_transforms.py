import pytest

from apiflow.context import ExecutionContext
from apiflow.contracts import TransformConfig
from apiflow.errors import TransformError
from apiflow.expressions import TransformMapper


@pytest.fixture
def context() -> ExecutionContext:
    ctx = ExecutionContext({"currency": "EUR", "threshold": 20})
    ctx.set_output(
        0,
        "orders",
        {
            "orders": [
                {"id": 1, "total": 10, "customer": {"name": "Ada"}},
                {"id": 2, "total": 30, "customer": {"name": "Bob"}},
                {"id": 3, "total": 25, "customer": {"name": "Cy"}},
            ],
            "page": 1,
        },
    )
    return ctx


def _apply(operations, context, source=None):
    config = TransformConfig.model_validate({"source": source, "operations": operations})
    return TransformMapper().apply(config, context)


def test_set_copy_rename_remove(context):
    output = _apply(
        [
            {"op": "set", "field": "meta.version", "value": 2},
            {"op": "copy", "field": "currency", "from": "params.currency"},
            {"op": "copy", "field": "first", "from": "previous.orders[0].id"},
            {"op": "rename", "field": "page_number", "from": "page"},
            {"op": "remove", "field": "tmp"},
        ],
        context,
        source={"page": 1, "tmp": True},
    )

    assert output == {"meta": {"version": 2}, "currency": "EUR", "first": 1, "page_number": 1}


def test_source_is_not_mutated(context):
    source = {"a": 1}
    config = TransformConfig.model_validate(
        {"source": source, "operations": [{"op": "set", "field": "b", "value": 2}]}
    )
    TransformMapper().apply(config, context)
    assert source == {"a": 1}


def test_map_and_filter(context):
    output = _apply(
        [
            {
                "op": "filter",
                "field": "large",
                "from": "previous.orders",
                "where": "item.total >= params.threshold",
            },
            {
                "op": "map",
                "field": "summary",
                "from": "large",
                "fields": {"order_id": "item.id", "customer": "customer.name"},
            },
        ],
        context,
    )

    assert [o["id"] for o in output["large"]] == [2, 3]
    assert output["summary"] == [
        {"order_id": 2, "customer": "Bob"},
        {"order_id": 3, "customer": "Cy"},
    ]


@pytest.mark.parametrize(
    "function,expected",
    [("sum", 65), ("count", 3), ("average", 65 / 3), ("min", 10), ("max", 30)],
)
def test_aggregate(context, function, expected):
    operation = {"op": "aggregate", "field": "result", "from": "previous.orders", "function": function}
    if function != "count":
        operation["key"] = "total"
    assert _apply([operation], context)["result"] == pytest.approx(expected)


def test_aggregate_of_empty_list(context):
    output = _apply(
        [
            {"op": "set", "field": "empty", "value": []},
            {"op": "aggregate", "field": "total", "from": "empty", "function": "sum", "key": "x"},
            {"op": "aggregate", "field": "top", "from": "empty", "function": "max", "key": "x"},
        ],
        context,
    )
    assert output["total"] == 0
    assert output["top"] is None


def test_compute_reads_output_fields_and_context(context):
    output = _apply(
        [
            {"op": "set", "field": "net", "value": 100},
            {"op": "compute", "field": "gross", "expression": "net * 1.2"},
            {"op": "compute", "field": "over", "expression": "net > params.threshold"},
            {"op": "compute", "field": "pages", "expression": "previous.page + 1"},
        ],
        context,
    )
    assert output["gross"] == pytest.approx(120)
    assert output["over"] is True
    assert output["pages"] == 2


@pytest.mark.parametrize(
    "operations",
    [
        [{"op": "copy", "field": "x", "from": "previous.nope"}],
        [{"op": "remove", "field": "missing"}],
        [{"op": "map", "field": "x", "from": "previous.page", "fields": {"a": "id"}}],
        [{"op": "compute", "field": "x", "expression": "1 / 0"}],
        [{"op": "compute", "field": "x", "expression": "open('f')"}],
        [{"op": "aggregate", "field": "x", "from": "previous.orders", "function": "sum", "key": "customer"}],
    ],
)
def test_failures_raise_transform_error(context, operations):
    with pytest.raises(TransformError):
        _apply(operations, context)


def test_operation_arguments_are_validated():
    with pytest.raises(ValueError):
        TransformConfig.model_validate({"operations": [{"op": "filter", "field": "x", "from": "y"}]})
    with pytest.raises(ValueError):
        TransformConfig.model_validate(
            {"operations": [{"op": "aggregate", "field": "x", "from": "y", "function": "max"}]}
        )


def test_check_reports_bad_expressions():
    mapper = TransformMapper()
    config = TransformConfig.model_validate(
        {
            "operations": [
                {"op": "compute", "field": "ok", "expression": "a + b"},
                {"op": "compute", "field": "bad", "expression": "a +"},
                {"op": "filter", "field": "f", "from": "items", "where": "other.x > 1"},
            ]
        }
    )
    problems = mapper.check(config)
    assert len(problems) == 2
    assert problems[0].startswith("operation 2")


@pytest.mark.parametrize(
    "expression",
    ["'x' * 5000 * 5000", "5000 * 'x'", "true * 3", "previous.orders * 2", "'a' - 'b'"],
)
def test_compute_only_multiplies_numbers(context, expression):
    with pytest.raises(TransformError):
        _apply([{"op": "compute", "field": "x", "expression": expression}], context)


def test_compute_concatenation_is_bounded(context):
    output = _apply(
        [
            {"op": "set", "field": "long", "value": "y" * 6000},
            {"op": "compute", "field": "label", "expression": "'EUR ' + params.currency"},
            {"op": "compute", "field": "orders", "expression": "previous.orders + previous.orders"},
        ],
        context,
    )
    assert output["label"] == "EUR EUR"
    assert len(output["orders"]) == 6

    with pytest.raises(TransformError):
        _apply(
            [
                {"op": "set", "field": "long", "value": "y" * 6000},
                {"op": "compute", "field": "x", "expression": "long + long"},
            ],
            context,
        )

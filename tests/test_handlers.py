"""Node handlers, driven with parameters validated the way the executor validates them."""

import base64

import httpx
import orjson
import pytest

from sheetflow.core.exceptions import ExternalServiceError, NodeConfigurationError, UpstreamNotReadyError
from sheetflow.services.execution.models import StepContext
from sheetflow.services.handlers import (
    handle_aggregate,
    handle_ai_query,
    handle_api_integration,
    handle_condition,
    handle_data_transform,
    handle_file_input,
    handle_filter,
    handle_formula,
    handle_join,
    handle_sort,
    handle_spreadsheet_generator,
    handle_start,
)
from sheetflow.services.handlers.ai import analyze_rows, find_pattern
from sheetflow.services.handlers.data import apply_join

from tests.helpers import SALES_ROWS

PRODUCTS = [
    {"product": "A", "label": "Apples"},
    {"product": "C", "label": "Cherries"},
]


def _context(node_type, **input_data) -> StepContext:
    return StepContext(execution_id="e1", workflow_id="wf", node_id="n1", node_type=node_type,
                       input_data=input_data)


async def _run(executor, handler, node_type, config, **input_data):
    params = executor.prepare_parameters(node_type, config)
    return await handler("n1", node_type, params, _context(node_type, **input_data))


class TestFilterAndSort:
    @pytest.mark.asyncio
    async def test_filter_with_editor_operators(self, executor):
        output = await _run(executor, handle_filter, "filter", {
            "conditions": [{"field": "amount", "operator": "greaterThan", "value": 50}],
        }, data=SALES_ROWS)
        rows = output["result"]["data"]
        assert [r["amount"] for r in rows] == [120, 80, 200]
        assert output["result"]["filteredOut"] == 1

    @pytest.mark.asyncio
    async def test_filter_or_logic(self, executor):
        output = await _run(executor, handle_filter, "filter", {
            "conditions": [
                {"field": "region", "operator": "eq", "value": "east"},
                {"field": "product", "operator": "eq", "value": "B"},
            ],
            "logic": "or",
        }, data=SALES_ROWS)
        assert output["result"]["rowCount"] == 3

    @pytest.mark.asyncio
    async def test_filter_requires_rows(self, executor):
        with pytest.raises(ValueError):
            await _run(executor, handle_filter, "filter", {}, data=None)

    @pytest.mark.asyncio
    async def test_multi_key_sort(self, executor):
        output = await _run(executor, handle_sort, "sort", {
            "sortBy": [{"field": "region"}, {"field": "amount", "direction": "desc"}],
        }, data=SALES_ROWS)
        assert [(r["region"], r["amount"]) for r in output["result"]["data"]] == [
            ("east", 200), ("north", 120), ("north", 45), ("south", 80),
        ]

    @pytest.mark.asyncio
    async def test_missing_values_sort_last(self, executor):
        rows = [{"v": None}, {"v": 2}, {"v": 1}]
        output = await _run(executor, handle_sort, "sort", {"sortBy": [{"field": "v", "direction": "desc"}]}, data=rows)
        assert [r["v"] for r in output["result"]["data"]] == [2, 1, None]


class TestFormulaAndAggregate:
    @pytest.mark.asyncio
    async def test_formula_columns(self, executor):
        output = await _run(executor, handle_formula, "formula", {
            "formulas": {"doubled": "amount * 2", "with tax": "round(${amount} * 1.1, 1)"},
        }, data=SALES_ROWS[:1])
        row = output["result"]["data"][0]
        assert row["doubled"] == 240
        assert row["with tax"] == 132.0
        assert row["region"] == "north"

    @pytest.mark.asyncio
    async def test_formula_row_errors_become_none(self, executor):
        output = await _run(executor, handle_formula, "formula", {
            "formulas": {"ratio": "amount / zero"}, "keepExisting": False,
        }, data=[{"amount": 1, "zero": 0}])
        assert output["result"]["data"] == [{"ratio": None}]

    @pytest.mark.asyncio
    async def test_formula_rejects_code(self, executor):
        output = await _run(executor, handle_formula, "formula", {
            "formulas": {"x": "__import__('os').getcwd()"},
        }, data=[{"a": 1}])
        assert output["result"]["data"][0]["x"] is None

    @pytest.mark.asyncio
    async def test_formula_syntax_error(self, executor):
        with pytest.raises(NodeConfigurationError):
            await _run(executor, handle_formula, "formula", {"formulas": {"x": "1 +"}}, data=[{"a": 1}])

    @pytest.mark.asyncio
    async def test_grouped_aggregate(self, executor):
        output = await _run(executor, handle_aggregate, "aggregate", {
            "groupBy": ["region"],
            "aggregations": [
                {"field": "amount", "function": "sum", "outputField": "total"},
                {"function": "count"},
            ],
        }, data=SALES_ROWS)
        assert output["result"]["data"] == [
            {"region": "north", "count": 2, "total": 165.0, "count_rows": 2},
            {"region": "south", "count": 1, "total": 80.0, "count_rows": 1},
            {"region": "east", "count": 1, "total": 200.0, "count_rows": 1},
        ]

    @pytest.mark.asyncio
    async def test_ungrouped_aggregate(self, executor):
        output = await _run(executor, handle_aggregate, "aggregate", {
            "aggregations": [{"field": "amount", "function": "avg"}, {"field": "amount", "function": "max"}],
        }, data=SALES_ROWS)
        assert output["result"]["data"] == [{"avg_amount": 111.25, "max_amount": 200.0}]


class TestJoin:
    @pytest.mark.asyncio
    async def test_inner_join_uses_secondary_data(self, executor):
        output = await _run(executor, handle_join, "join", {
            "leftField": "product", "rightField": "product",
        }, data=SALES_ROWS, secondaryData=PRODUCTS)
        rows = output["result"]["data"]
        assert [(r["region"], r["label"]) for r in rows] == [("north", "Apples"), ("east", "Apples")]

    def test_left_right_and_full_joins(self):
        left = [{"k": 1, "a": "x"}, {"k": 2, "a": "y"}]
        right = [{"k": 2, "b": "p"}, {"k": 3, "b": "q"}]

        assert apply_join(left, right, "k", "k", "left") == [
            {"k": 1, "a": "x"}, {"k": 2, "a": "y", "b": "p"},
        ]
        assert apply_join(left, right, "k", "k", "right") == [
            {"k": 2, "a": "y", "b": "p"}, {"b": "q", "k": 3, "a": None},
        ]
        assert len(apply_join(left, right, "k", "k", "full")) == 3

    @pytest.mark.asyncio
    async def test_join_without_secondary_data(self, executor):
        with pytest.raises(ValueError):
            await _run(executor, handle_join, "merge", {"leftField": "a", "rightField": "a"}, data=SALES_ROWS)


class TestDataTransform:
    @pytest.mark.asyncio
    async def test_pipeline(self, executor):
        output = await _run(executor, handle_data_transform, "dataTransform", {
            "operations": [
                {"type": "filter", "config": {"conditions": [{"field": "amount", "operator": "gte", "value": 80}]}},
                {"type": "map", "config": {"mappings": {
                    "who": "region", "amount": "amount", "cents": {"formula": "amount * 100"},
                }}},
                {"type": "sort", "config": {"sortBy": [{"field": "cents", "direction": "desc"}]}},
            ],
        }, data=SALES_ROWS)
        assert output["result"]["data"] == [
            {"who": "east", "amount": 200, "cents": 20000.0},
            {"who": "north", "amount": 120, "cents": 12000.0},
            {"who": "south", "amount": 80, "cents": 8000.0},
        ]

    @pytest.mark.asyncio
    async def test_group_then_aggregate(self, executor):
        output = await _run(executor, handle_data_transform, "dataTransform", {
            "operations": [
                {"type": "group", "config": {"groupBy": ["product"]}},
                {"type": "aggregate", "config": {"aggregations": [{"field": "amount", "function": "min"}]}},
            ],
        }, data=SALES_ROWS)
        assert output["result"]["data"] == [
            {"product": "A", "count": 2, "min_amount": 120.0},
            {"product": "B", "count": 2, "min_amount": 45.0},
        ]


class TestControl:
    @pytest.mark.asyncio
    async def test_start_merges_initial_data_over_inputs(self, executor):
        output = await _run(executor, handle_start, "start", {"initialData": '{"a": 1, "b": 2}'},
                            inputs={"b": 0, "c": 3})
        assert output["result"] == {"a": 1, "b": 2, "c": 3}

    @pytest.mark.asyncio
    async def test_start_keeps_non_json_text(self, executor):
        output = await _run(executor, handle_start, "start", {"initialData": "hello"})
        assert output["result"] == {"value": "hello"}

    @pytest.mark.asyncio
    async def test_condition_on_first_row(self, executor):
        config = {"conditions": [{"field": "region", "operator": "equals", "value": "north"}]}
        matched = await _run(executor, handle_condition, "condition", config, data=SALES_ROWS)
        assert matched["result"]["branch"] == "true"
        assert matched["result"]["data"] == SALES_ROWS

        missed = await _run(executor, handle_condition, "conditionalBranch", config, data=SALES_ROWS[1:])
        assert missed["result"]["matched"] is False


class TestFileInput:
    @pytest.mark.asyncio
    async def test_shapes_resolved_rows(self, executor):
        schema = [{"name": "region", "type": "string"}, {"name": "amount", "type": "number"}]
        output = await _run(executor, handle_file_input, "excelInput", {"maxRows": 2},
                            schema=schema, data=SALES_ROWS, sheet="Sheet1", total_rows=4, file_id="f1")
        result = output["result"]
        assert len(result["data"]) == 2
        assert result["headers"] == ["region", "amount"]
        assert result["total_rows"] == 4
        assert result["sheet"] == "Sheet1"

    @pytest.mark.asyncio
    async def test_missing_schema_is_not_ready(self, executor):
        with pytest.raises(UpstreamNotReadyError):
            await _run(executor, handle_file_input, "csvInput", {}, data=SALES_ROWS)


class TestSpreadsheetGenerator:
    @pytest.mark.asyncio
    async def test_csv_with_two_sheets(self, executor):
        output = await _run(executor, handle_spreadsheet_generator, "spreadsheetGenerator", {
            "filename": "report.csv",
            "sheets": [
                {"name": "North", "filter": {"region": "north"}},
                {"name": "East", "filter": {"region": "east"}, "includeHeaders": False},
                {"name": "West", "filter": {"region": "west"}},
            ],
        }, data=SALES_ROWS)
        file = output["result"]["output"]
        text = base64.b64decode(file["data"]).decode()
        assert file["sheets"] == ["North", "East"]
        assert file["mimeType"] == "text/csv"
        assert text == (
            "# North\nregion,product,amount\nnorth,A,120\nnorth,B,45\n"
            "\n# East\neast,A,200\n"
        )

    @pytest.mark.asyncio
    async def test_json_format(self, executor):
        output = await _run(executor, handle_spreadsheet_generator, "spreadsheetGenerator", {
            "format": "json", "filename": "out.json",
        }, data=SALES_ROWS[:1])
        file = output["result"]["output"]
        assert orjson.loads(base64.b64decode(file["data"])) == {"Sheet1": SALES_ROWS[:1]}
        assert file["size"] == len(base64.b64decode(file["data"]))

    @pytest.mark.asyncio
    async def test_requires_rows(self, executor):
        with pytest.raises(ValueError):
            await _run(executor, handle_spreadsheet_generator, "spreadsheetGenerator", {}, data={"x": 1})


class TestAIAnalysis:
    def test_statistics_and_outliers(self):
        rows = [{"v": v} for v in (10, 10, 10, 10, 10, 10, 10, 10, 10, 100)]
        analysis = analyze_rows(rows, analysis_type="outliers")
        assert analysis["statistics"]["v"]["outliers"] == [100.0]
        assert analysis["insights"][0]["column"] == "v"

    def test_non_numeric_data(self):
        assert analyze_rows([{"name": "a"}])["status"] == "warning"
        assert analyze_rows([])["message"] == "No data to analyze"

    @pytest.mark.parametrize("values,pattern", [
        ([1, 2, 3], "increasing"),
        ([3, 2, 1], "decreasing"),
        ([100, 101, 100], "stable"),
        ([1, 5, 2], "mixed"),
    ])
    def test_patterns(self, values, pattern):
        assert find_pattern(values)["pattern"] == pattern

    @pytest.mark.asyncio
    async def test_handler_without_assistant(self, executor):
        output = await _run(executor, handle_ai_query, "aiAnalysis", {"analysisType": "trends"}, data=SALES_ROWS)
        assert output["success"]
        assert output["result"]["analysis"]["status"] == "success"
        assert "answer" not in output["result"]

    @pytest.mark.asyncio
    async def test_assistant_requested_but_not_configured(self, executor):
        output = await _run(executor, handle_ai_query, "aiQuery",
                            {"prompt": "why?", "useAssistant": True}, data=SALES_ROWS)
        assert not output["success"]
        assert output["error_kind"] == "ConfigurationError"


class TestAPIIntegration:
    @pytest.mark.asyncio
    async def test_post_sends_upstream_rows(self, executor):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = orjson.loads(request.read())
            return httpx.Response(201, json={"created": True})

        params = executor.prepare_parameters("apiIntegration", {"endpoint": "http://api.test/rows", "method": "POST"})
        output = await handle_api_integration("n1", "apiIntegration", params, _context("apiIntegration", data=SALES_ROWS),
                                              transport=httpx.MockTransport(handler))
        assert output["success"]
        assert output["result"]["status"] == 201
        assert output["result"]["data"] == {"created": True}
        assert seen == {"method": "POST", "body": SALES_ROWS}

    @pytest.mark.asyncio
    async def test_client_error_fails_without_raising(self, executor):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="missing"))
        params = executor.prepare_parameters("apiCall", {"endpoint": "http://api.test/x"})
        output = await handle_api_integration("n1", "apiCall", params, _context("apiCall"), transport=transport)
        assert not output["success"]
        assert output["result"]["data"] == "missing"

    @pytest.mark.asyncio
    async def test_server_error_raises(self, executor):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        params = executor.prepare_parameters("apiCall", {"endpoint": "http://api.test/x"})
        with pytest.raises(ExternalServiceError):
            await handle_api_integration("n1", "apiCall", params, _context("apiCall"), transport=transport)

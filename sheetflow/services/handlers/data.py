"""Tabular data handlers: filter, sort, formula, aggregate, join and the
multi-operation dataTransform pipeline.

Rows are plain dicts. Each handler reads input_data["data"] (join also
reads input_data["secondaryData"]) and returns the transformed rows.
"""

import ast
import operator
import re
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sheetflow.core.exceptions import NodeConfigurationError
from sheetflow.core.logging import get_logger
from sheetflow.services.execution.conditions import filter_rows
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)

Rows = List[Dict[str, Any]]


def _input_rows(context: StepContext, key: str = "data") -> Rows:
    rows = context.input_data.get(key)
    if not isinstance(rows, list):
        raise ValueError(f"No {'secondary ' if key != 'data' else ''}data provided for node {context.node_id}")
    return [dict(row) for row in rows if isinstance(row, dict)]


def _result(node_id: str, node_type: str, rows: Rows, **extra) -> Dict[str, Any]:
    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": {
            "data": rows,
            "rowCount": len(rows),
            "transformedAt": datetime.now(timezone.utc).isoformat(),
            **extra,
        },
    }


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# OPERATIONS
# =============================================================================

def apply_filter(rows: Rows, conditions: List[Dict[str, Any]], logic: str = "and") -> Rows:
    return filter_rows(rows, conditions, logic)


def apply_sort(rows: Rows, sort_by: List[Dict[str, Any]]) -> Rows:
    """Stable multi-key sort. Missing values sort last in either direction."""
    result = list(rows)
    # Sort by the least significant key first
    for key in reversed(sort_by):
        field = key["field"]
        reverse = key.get("direction") == "desc"
        present = [r for r in result if r.get(field) is not None]
        missing = [r for r in result if r.get(field) is None]

        def sort_value(row, field=field):
            value = row[field]
            number = _to_number(value)
            return (0, number, "") if number is not None else (1, 0.0, str(value))

        result = sorted(present, key=sort_value, reverse=reverse) + missing
    return result


def apply_group(rows: Rows, group_by: List[str]) -> Rows:
    groups: "OrderedDict[tuple, Rows]" = OrderedDict()
    for row in rows:
        groups.setdefault(tuple(row.get(f) for f in group_by), []).append(row)
    grouped = []
    for key, members in groups.items():
        entry = dict(zip(group_by, key))
        entry["group"] = members
        entry["count"] = len(members)
        grouped.append(entry)
    return grouped


def _aggregate(members: Rows, spec: Dict[str, Any]) -> Any:
    func = spec["function"]
    if func == "count":
        return len(members)
    values = [v for v in (_to_number(r.get(spec.get("field"))) for r in members) if v is not None]
    if func == "sum":
        return sum(values)
    if func == "avg":
        return sum(values) / len(values) if values else 0
    if func == "min":
        return min(values) if values else None
    if func == "max":
        return max(values) if values else None
    raise NodeConfigurationError(f"Unknown aggregate function: {func}")


def _output_field(spec: Dict[str, Any]) -> str:
    return spec.get("output_field") or spec.get("outputField") or f"{spec['function']}_{spec.get('field') or 'rows'}"


def apply_aggregate(rows: Rows, aggregations: List[Dict[str, Any]], group_by: Optional[List[str]] = None) -> Rows:
    """Aggregate per group, or over all rows when no grouping is given.

    Rows that already carry a "group" list (output of a group operation)
    are aggregated per group and keep their keys.
    """
    if group_by:
        rows = apply_group(rows, group_by)

    if any(isinstance(r.get("group"), list) for r in rows):
        result = []
        for grouped in rows:
            entry = {k: v for k, v in grouped.items() if k != "group"}
            for spec in aggregations:
                entry[_output_field(spec)] = _aggregate(grouped.get("group") or [], spec)
            result.append(entry)
        return result

    return [{_output_field(spec): _aggregate(rows, spec) for spec in aggregations}]


def apply_join(left: Rows, right: Rows, left_field: str, right_field: str,
               join_type: str = "inner", include_fields: Optional[List[str]] = None) -> Rows:
    """Join two row sets on left_field == right_field (compared as strings).

    include_fields picks the right-hand columns to carry over; when empty,
    every right-hand column not already on the left row is carried.
    """
    include = list(include_fields or [])
    right_index: Dict[str, Rows] = {}
    for row in right:
        right_index.setdefault(str(row.get(right_field)), []).append(row)

    def fields_of(row: Dict[str, Any]) -> List[str]:
        return include or [k for k in row if k != right_field]

    def merged(left_row: Dict[str, Any], right_row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        joined = dict(left_row)
        for field in (fields_of(right_row) if right_row else include):
            if right_row is None:
                joined.setdefault(field, None)
            elif include or field not in joined:
                joined[field] = right_row.get(field)
        return joined

    left_columns = list(left[0].keys()) if left else []

    def right_only(right_row: Dict[str, Any]) -> Dict[str, Any]:
        joined = {field: right_row.get(field) for field in fields_of(right_row)}
        joined.setdefault(left_field, right_row.get(right_field))
        for column in left_columns:
            joined.setdefault(column, None)
        return joined

    result: Rows = []
    if join_type in ("inner", "left", "full"):
        for row in left:
            matches = right_index.get(str(row.get(left_field)), [])
            if matches:
                result.extend(merged(row, m) for m in matches)
            elif join_type != "inner":
                result.append(merged(row, None))
        if join_type == "full":
            left_keys = {str(r.get(left_field)) for r in left}
            result.extend(right_only(r) for r in right if str(r.get(right_field)) not in left_keys)
        return result

    if join_type == "right":
        left_index: Dict[str, Rows] = {}
        for row in left:
            left_index.setdefault(str(row.get(left_field)), []).append(row)
        for row in right:
            matches = left_index.get(str(row.get(right_field)), [])
            if matches:
                result.extend(merged(m, row) for m in matches)
            else:
                result.append(right_only(row))
        return result

    raise NodeConfigurationError(f"Unknown join type: {join_type}")


# =============================================================================
# FORMULAS
# =============================================================================

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
}

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class FormulaError(ValueError):
    pass


def compile_formula(expression: str) -> Tuple[ast.AST, Dict[str, str]]:
    """Parse an arithmetic expression. ${Column Name} refers to any column;
    bare identifiers refer to columns with identifier-safe names."""
    aliases: Dict[str, str] = {}

    def _alias(match: "re.Match") -> str:
        name = f"__col{len(aliases)}"
        aliases[name] = match.group(1)
        return name

    source = _PLACEHOLDER.sub(_alias, expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise NodeConfigurationError(f"Invalid formula '{expression}': {e.msg}") from e
    return tree, aliases


def evaluate_formula(tree: ast.AST, aliases: Dict[str, str], row: Dict[str, Any]) -> Any:
    def _eval(node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float, str)):
            return node.value
        if isinstance(node, ast.Name):
            column = aliases.get(node.id, node.id)
            if column not in row:
                raise FormulaError(f"Unknown column: {column}")
            value = row[column]
            number = _to_number(value)
            return number if number is not None else value
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            return _BIN_OPS[type(node.op)](_eval(node.left), _eval(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](_eval(node.operand))
        if (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
                and node.func.id in _FUNCTIONS and not node.keywords):
            return _FUNCTIONS[node.func.id](*[_eval(arg) for arg in node.args])
        raise FormulaError(f"Unsupported expression: {ast.dump(node)}")

    return _eval(tree)


def apply_formulas(rows: Rows, formulas: Dict[str, str], keep_existing: bool = True) -> Rows:
    """Compute new columns per row. A row whose formula fails gets None for that column."""
    compiled = {target: compile_formula(expr) for target, expr in formulas.items()}
    result = []
    for row in rows:
        out = dict(row) if keep_existing else {}
        for target, (tree, aliases) in compiled.items():
            try:
                out[target] = evaluate_formula(tree, aliases, row)
            except (FormulaError, TypeError, ZeroDivisionError, ValueError, OverflowError):
                out[target] = None
        result.append(out)
    return result


def apply_map(rows: Rows, mappings: Dict[str, Any]) -> Rows:
    """Project rows: target <- source column, or target <- {"formula": expr}."""
    compiled = {}
    for target, mapping in mappings.items():
        if isinstance(mapping, dict) and mapping.get("formula"):
            compiled[target] = compile_formula(mapping["formula"])
    result = []
    for row in rows:
        out = {}
        for target, mapping in mappings.items():
            if target in compiled:
                tree, aliases = compiled[target]
                try:
                    out[target] = evaluate_formula(tree, aliases, row)
                except (FormulaError, TypeError, ZeroDivisionError, ValueError, OverflowError):
                    out[target] = None
            elif isinstance(mapping, str):
                out[target] = row.get(mapping)
        result.append(out)
    return result


# =============================================================================
# HANDLERS
# =============================================================================

async def handle_filter(node_id: str, node_type: str, parameters: Dict[str, Any],
                        context: StepContext) -> Dict[str, Any]:
    rows = _input_rows(context)
    filtered = apply_filter(rows, parameters.get("conditions", []), parameters.get("logic", "and"))
    logger.info("Filter applied", node_id=node_id, rows_in=len(rows), rows_out=len(filtered))
    return _result(node_id, node_type, filtered, filteredOut=len(rows) - len(filtered))


async def handle_sort(node_id: str, node_type: str, parameters: Dict[str, Any],
                      context: StepContext) -> Dict[str, Any]:
    rows = _input_rows(context)
    return _result(node_id, node_type, apply_sort(rows, parameters["sort_by"]))


async def handle_formula(node_id: str, node_type: str, parameters: Dict[str, Any],
                         context: StepContext) -> Dict[str, Any]:
    rows = _input_rows(context)
    computed = apply_formulas(rows, parameters["formulas"], parameters.get("keep_existing", True))
    return _result(node_id, node_type, computed)


async def handle_aggregate(node_id: str, node_type: str, parameters: Dict[str, Any],
                           context: StepContext) -> Dict[str, Any]:
    rows = _input_rows(context)
    return _result(node_id, node_type, apply_aggregate(rows, parameters["aggregations"], parameters.get("group_by")))


async def handle_join(node_id: str, node_type: str, parameters: Dict[str, Any],
                      context: StepContext) -> Dict[str, Any]:
    left = _input_rows(context)
    right = _input_rows(context, "secondaryData")
    joined = apply_join(left, right, parameters["left_field"], parameters["right_field"],
                        parameters.get("join_type", "inner"), parameters.get("include_fields"))
    return _result(node_id, node_type, joined)


async def handle_data_transform(node_id: str, node_type: str, parameters: Dict[str, Any],
                                context: StepContext) -> Dict[str, Any]:
    """Apply a sequence of map/filter/sort/group/aggregate/join operations."""
    rows = _input_rows(context)
    logger.info("Starting data transformation", node_id=node_id, rows=len(rows),
                operations=len(parameters["operations"]))

    for operation in parameters["operations"]:
        op_type = operation["type"]
        config = operation.get("config") or {}
        if op_type == "map":
            rows = apply_map(rows, config.get("mappings", {}))
        elif op_type == "filter":
            rows = apply_filter(rows, config.get("conditions", []), config.get("logic") or config.get("operator", "and"))
        elif op_type == "sort":
            rows = apply_sort(rows, config.get("sortBy") or config.get("sort_by") or [])
        elif op_type == "group":
            rows = apply_group(rows, config.get("groupBy") or config.get("group_by") or [])
        elif op_type == "aggregate":
            rows = apply_aggregate(rows, config.get("aggregations", []))
        elif op_type == "join":
            right = _input_rows(context, "secondaryData")
            rows = apply_join(rows, right,
                              config.get("leftField") or config.get("left_field"),
                              config.get("rightField") or config.get("right_field"),
                              config.get("type") or config.get("join_type", "inner"),
                              config.get("includeFields") or config.get("include_fields"))

    logger.info("Data transformation complete", node_id=node_id, rows=len(rows))
    return _result(node_id, node_type, rows)

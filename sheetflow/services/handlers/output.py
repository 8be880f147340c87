"""Spreadsheet generator handler: renders upstream rows as a base64 file."""

import base64
import csv
import io
from typing import Any, Dict, List

import orjson

from sheetflow.core.logging import get_logger
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)

MIME_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
}


def _sheet_rows(rows: List[Dict[str, Any]], sheet_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not sheet_filter:
        return rows
    return [row for row in rows if all(row.get(k) == v for k, v in sheet_filter.items())]


def _columns(rows: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for name in row:
            if name not in columns:
                columns.append(name)
    return columns


def render_csv(sheets: Dict[str, List[Dict[str, Any]]], include_headers: Dict[str, bool]) -> bytes:
    """One CSV section per sheet. Multiple sheets are separated by a "# <name>" line."""
    buffer = io.StringIO()
    for index, (name, rows) in enumerate(sheets.items()):
        if len(sheets) > 1:
            if index:
                buffer.write("\n")
            buffer.write(f"# {name}\n")
        columns = _columns(rows)
        writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
        if include_headers.get(name, True):
            writer.writeheader()
        writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


async def handle_spreadsheet_generator(node_id: str, node_type: str, parameters: Dict[str, Any],
                                       context: StepContext) -> Dict[str, Any]:
    rows = context.input_data.get("data")
    if not isinstance(rows, list):
        raise ValueError("Spreadsheet generator requires array input data")

    sheets: Dict[str, List[Dict[str, Any]]] = {}
    headers: Dict[str, bool] = {}
    for spec in parameters.get("sheets") or [{"name": "Sheet1"}]:
        name = spec.get("name") or "Sheet1"
        sheet_rows = _sheet_rows(rows, spec.get("filter") or {})
        if not sheet_rows:
            logger.warning("No data for sheet after filtering", node_id=node_id, sheet=name)
            continue
        sheets[name] = sheet_rows
        headers[name] = spec.get("include_headers", True)

    fmt = parameters.get("format", "csv")
    if fmt == "json":
        payload = orjson.dumps(sheets, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS)
    else:
        payload = render_csv(sheets, headers)

    logger.info("Spreadsheet generated", node_id=node_id, format=fmt, sheets=len(sheets), size=len(payload))
    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": {
            "output": {
                "filename": parameters.get("filename") or f"generated-spreadsheet.{fmt}",
                "format": fmt,
                "data": base64.b64encode(payload).decode("ascii"),
                "mimeType": MIME_TYPES[fmt],
                "size": len(payload),
                "sheets": list(sheets),
            },
        },
    }

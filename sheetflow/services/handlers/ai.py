"""AI query / analysis handler.

Computes per-column statistics locally (mean, standard deviation, range,
outliers beyond two standard deviations, simple trend detection) and,
when asked, sends the summary and the prompt to the AI assistant.
"""

import math
from typing import Any, Dict, List, Optional, Tuple

from sheetflow.core.logging import get_logger
from sheetflow.services.ai_client import AIAssistantClient
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)

NUMERIC_SHARE = 0.7
OUTLIER_SIGMA = 2.0


def _as_number(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def numeric_columns(rows: List[Dict[str, Any]]) -> Dict[str, List[float]]:
    """Columns where more than 70% of rows hold a number, with those numbers."""
    if not rows:
        return {}
    columns: Dict[str, List[float]] = {}
    for name in rows[0].keys():
        values = [n for n in (_as_number(row.get(name)) for row in rows) if n is not None]
        if len(values) > len(rows) * NUMERIC_SHARE:
            columns[name] = values
    return columns


def mean_std(values: List[float]) -> Tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def find_outliers(values: List[float], mean: float, std: float) -> List[float]:
    return [v for v in values if abs(v - mean) > OUTLIER_SIGMA * std]


def find_pattern(values: List[float]) -> Dict[str, Any]:
    increasing = decreasing = stable = True
    for previous, current in zip(values, values[1:]):
        if current <= previous:
            increasing = False
        if current >= previous:
            decreasing = False
        if abs(current - previous) > 0.1 * abs(previous):
            stable = False
    if increasing:
        return {"pattern": "increasing", "confidence": 0.9}
    if decreasing:
        return {"pattern": "decreasing", "confidence": 0.9}
    if stable:
        return {"pattern": "stable", "confidence": 0.9}
    return {"pattern": "mixed", "confidence": 0.5}


def analyze_rows(rows: List[Dict[str, Any]], analysis_type: str = "general",
                 detect_outliers: bool = False, find_patterns: bool = False) -> Dict[str, Any]:
    if not rows:
        return {"message": "No data to analyze", "status": "warning"}

    columns = numeric_columns(rows)
    if not columns:
        return {"message": "No numeric columns found for analysis", "status": "warning"}

    statistics: Dict[str, Dict[str, Any]] = {}
    for name, values in columns.items():
        mean, std = mean_std(values)
        stats = {"mean": mean, "stdDev": std, "min": min(values), "max": max(values), "count": len(values)}
        if detect_outliers or analysis_type == "outliers":
            stats["outliers"] = find_outliers(values, mean, std)
        if find_patterns:
            stats["pattern"] = find_pattern(values)
        statistics[name] = stats

    insights = []
    for name, values in columns.items():
        stats = statistics[name]
        if analysis_type == "trends":
            pattern = find_pattern(values)
            insights.append({"column": name, "insight": (
                f"Column {name} shows a {pattern['pattern']} trend with {pattern['confidence'] * 100:.0f}% confidence."
            )})
        elif analysis_type == "outliers":
            if stats["outliers"]:
                insights.append({"column": name, "outliers": stats["outliers"],
                                 "insight": f"Found {len(stats['outliers'])} outliers in column {name}."})
        elif analysis_type == "forecast":
            pattern = find_pattern(values)["pattern"]
            outlook = {
                "increasing": "likely to continue increasing",
                "decreasing": "likely to continue decreasing",
            }.get(pattern, "stable")
            insights.append({"column": name, "insight": f"Column {name} is {outlook} based on historical trend."})
        else:
            insights.append({"column": name, "insight": (
                f"Column {name} has mean {stats['mean']:.2f} with standard deviation {stats['stdDev']:.2f}."
            )})

    return {
        "statistics": statistics,
        "insights": insights,
        "summary": f"Analyzed {len(columns)} numeric columns across {len(rows)} records.",
        "status": "success",
    }


async def handle_ai_query(node_id: str, node_type: str, parameters: Dict[str, Any],
                          context: StepContext,
                          ai_client: Optional[AIAssistantClient] = None) -> Dict[str, Any]:
    """Analyze upstream rows; optionally ask the AI assistant about them.

    AI assistant failures propagate so the scheduler can retry them.
    """
    rows = context.input_data.get("data") or []
    options = parameters.get("analysis_options") or {}
    analysis = analyze_rows(
        rows,
        analysis_type=parameters.get("analysis_type", "general"),
        detect_outliers=options.get("detect_outliers", False),
        find_patterns=options.get("find_patterns", False),
    )

    result: Dict[str, Any] = {"data": rows, "analysis": analysis}

    prompt = parameters.get("prompt") or ""
    if parameters.get("use_assistant") and prompt:
        if ai_client is None or not ai_client.enabled:
            return {"success": False, "node_id": node_id, "node_type": node_type,
                    "error": "AI assistant is not configured", "error_kind": "ConfigurationError"}
        answer = await ai_client.query(prompt, context={
            "schema": context.input_data.get("schema"),
            "summary": analysis.get("summary"),
            "statistics": analysis.get("statistics"),
            "sample": rows[:20],
        })
        result["answer"] = answer["content"]
        result["runId"] = answer["run_id"]

    logger.info("AI analysis complete", node_id=node_id, status=analysis.get("status"),
                assistant=bool(result.get("answer")))
    return {"success": True, "node_id": node_id, "node_type": node_type, "result": result}

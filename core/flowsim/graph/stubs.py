"""
Deterministic stand-ins for side-effecting steps.

The simulator never calls external systems. Each action type produces an
output shaped like the real step's result so that downstream variable
references (``nodes.<id>.data``, ``nodes.<id>.text``...) resolve during a
simulated run, plus a synthetic duration.
"""

import base64
import math
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from flowsim.graph.conditions import evaluate_expression
from flowsim.graph.node import Node, NodeType
from flowsim.graph.safe_eval import SafeEvalError
from flowsim.graph.variables import UNDEFINED, RuntimeContext, get_path, render_template

# Synthetic durations in milliseconds.
STUB_DURATIONS_MS: dict[NodeType, int] = {
    NodeType.START: 10,
    NodeType.END: 10,
    NodeType.CONDITION: 5,
    NodeType.PARALLEL: 5,
    NodeType.APPROVAL: 120,
    NodeType.CC: 20,
    NodeType.NOTIFICATION: 40,
    NodeType.API_CALL: 150,
    NodeType.LLM: 800,
    NodeType.SCRIPT: 30,
    NodeType.DATA_OP: 20,
    NodeType.SQL: 35,
    NodeType.KNOWLEDGE_RETRIEVAL: 300,
    NodeType.DOCUMENT_EXTRACTOR: 200,
}
DEFAULT_DURATION_MS = 20

_DELAY_UNITS_MS = {
    "milliseconds": 1,
    "ms": 1,
    "seconds": 1000,
    "minutes": 60_000,
    "hours": 3_600_000,
}
_HEADER_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
_SQL_IF = re.compile(
    r"\{%\s*if\s+(.+?)\s*%\}([\s\S]*?)(?:\{%\s*else\s*%\}([\s\S]*?))?\{%\s*endif\s*%\}"
)

SAMPLE_ROWS = [
    {"id": 1, "name": "Sample User", "email": "user@example.com", "created_at": "2024-01-01"},
    {"id": 2, "name": "Another User", "email": "test@example.com", "created_at": "2024-01-02"},
]


@dataclass
class StepOutcome:
    """What one simulated step produced."""

    output: Any
    duration_ms: int = 0
    log_input: Any = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None


def duration_for(node_type: NodeType) -> int:
    return STUB_DURATIONS_MS.get(node_type, DEFAULT_DURATION_MS)


# ---------------------------------------------------------------------------
# Per-type simulations
# ---------------------------------------------------------------------------


def _api_call(node: Node, effective: dict[str, Any], context: RuntimeContext) -> StepOutcome:
    url = str(effective.get("url") or "https://api.example.com")
    method = str(effective.get("method") or "GET").upper()

    query = [
        (p["key"], p["value"])
        for p in effective.get("query_params", [])
        if p.get("enabled") and p.get("key")
    ]
    headers: dict[str, str] = {}
    for header in effective.get("headers", []):
        key = str(header.get("key", "")).strip()
        if header.get("enabled") and key and _HEADER_NAME.match(key):
            headers[key] = header.get("value", "")

    auth = effective.get("auth") or {}
    match auth.get("type"):
        case "basic":
            credentials = f"{auth.get('username', '')}:{auth.get('password', '')}"
            token = base64.b64encode(credentials.encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        case "bearer":
            headers["Authorization"] = f"Bearer {auth.get('token', '')}"
        case "api_key":
            name = auth.get("api_key_name") or "X-API-Key"
            if auth.get("api_key_location") == "query":
                query.append((name, auth.get("api_key", "")))
            else:
                headers[name] = auth.get("api_key", "")

    if query:
        url += ("&" if "?" in url else "?") + urlencode(query)

    body: Any = context.payload
    if method not in ("GET", "HEAD") and effective.get("body"):
        body = effective["body"]

    data = {"result": "success", "method": method, "url": url}
    extracted: Any = data
    extract_path = (effective.get("response_handling") or {}).get("extract_path")
    if extract_path:
        value = get_path(data, extract_path)
        extracted = None if value is UNDEFINED else value

    response_headers = {"content-type": "application/json"}
    return StepOutcome(
        output={
            "status": 200,
            "data": extracted,
            "response": extracted,
            "headers": response_headers,
            "raw_data": data,
        },
        duration_ms=duration_for(NodeType.API_CALL),
        log_input={
            "api_url": url,
            "method": method,
            "headers": headers,
            "body": body,
            "body_type": effective.get("body_type", "none"),
            "timeout": effective.get("timeout", 30000),
        },
    )


def process_sql_template(sql: str, context: RuntimeContext) -> tuple[str, list[str]]:
    """Apply ``{% if %}...{% else %}...{% endif %}`` blocks, then ``{{var}}`` tokens.

    A block whose condition cannot be evaluated is left as written.
    """

    def _branch(match: re.Match) -> str:
        condition, true_part, false_part = match.group(1), match.group(2), match.group(3)
        try:
            chosen = evaluate_expression(condition, context)
        except SafeEvalError:
            return match.group(0)
        return true_part if chosen else (false_part or "")

    processed = _SQL_IF.sub(_branch, sql)
    rendered = render_template(processed, context.value_tree())
    value = rendered.value
    return (value if isinstance(value, str) else str(value)), rendered.warnings


def _sql(node: Node, effective: dict[str, Any], context: RuntimeContext) -> StepOutcome:
    raw_sql = effective.get("sql", "")
    processed, warnings = process_sql_template(raw_sql, context)
    database = effective.get("database_id") or "default"
    is_select = processed.strip().lower().startswith("select")

    if is_select:
        rows = [dict(row) for row in SAMPLE_ROWS]
        data: Any = (rows[0] if rows else None) if effective.get("return_single_record") else rows
        output = {
            "data": data,
            "affectedRows": len(rows),
            "output": rows,
            "success": True,
            "database": database,
        }
    else:
        result = {"affectedRows": 1, "success": True}
        output = {
            "data": [],
            "affectedRows": 1,
            "output": result,
            "success": True,
            "database": database,
        }

    return StepOutcome(
        output=output,
        duration_ms=duration_for(NodeType.SQL),
        log_input={"database_id": database, "original_sql": raw_sql, "processed_sql": processed},
        warnings=warnings,
    )


def _llm(node: Node, effective: dict[str, Any]) -> StepOutcome:
    model = effective.get("model") or "default"
    prompt = str(effective.get("prompt") or "")
    text = f"[simulated {model}] response to: {prompt[:200]}"
    return StepOutcome(
        output={"text": text, "response": {"id": f"sim-{node.id}", "model": model, "text": text}},
        duration_ms=duration_for(NodeType.LLM),
    )


def _approval(effective: dict[str, Any], context: RuntimeContext) -> StepOutcome:
    approver = effective.get("approver") or "manager"
    payload = context.payload if isinstance(context.payload, dict) else {"value": context.payload}
    return StepOutcome(
        output={
            "approved": True,
            "comment": "Approved",
            "approver": approver,
            "form_title": effective.get("form_title", ""),
            "original_request": context.payload,
            "processed_data": {**payload, "approval_result": "approved", "approver": approver},
        },
        duration_ms=duration_for(NodeType.APPROVAL),
    )


def _knowledge_retrieval(effective: dict[str, Any]) -> StepOutcome:
    query = str(effective.get("query") or "")
    dataset_ids = effective.get("dataset_ids") or []
    top_k = max(int(effective.get("top_k") or 2), 1)
    references = [
        {
            "id": f"seg_{i + 1}",
            "content": f"Knowledge segment {i + 1} about {query}.",
            "score": round(0.92 - 0.07 * i, 2),
            "title": f"Document {chr(ord('A') + i)}",
        }
        for i in range(top_k)
    ]
    result = "\n\n".join(r["content"] for r in references)
    outcome = StepOutcome(
        output={
            "result": result,
            "context": f'Knowledge retrieved for "{query}":\n\n{result}',
            "references": references,
        },
        duration_ms=duration_for(NodeType.KNOWLEDGE_RETRIEVAL),
        log_input={"query": query, "dataset_ids": dataset_ids},
    )
    if not dataset_ids:
        outcome.error = "No knowledge base selected"
    return outcome


def _document_extractor(effective: dict[str, Any]) -> StepOutcome:
    file_url = str(effective.get("file_url") or "")
    mode = effective.get("extraction_mode") or "text"
    outcome = StepOutcome(
        output={"text": f"[extracted from {file_url}] plain text content (mode: {mode})"},
        duration_ms=duration_for(NodeType.DOCUMENT_EXTRACTOR),
        log_input={"file_url": file_url, "mode": mode},
    )
    if not file_url or file_url == "undefined":
        outcome.error = "No valid file URL provided"
    return outcome


def _delay(effective: dict[str, Any]) -> StepOutcome:
    unit = str(effective.get("unit") or "seconds").lower()
    try:
        amount = float(effective.get("duration") or 0)
    except (TypeError, ValueError):
        return StepOutcome(output={}, error=f"Invalid delay duration {effective.get('duration')!r}")
    if not math.isfinite(amount) or amount < 0:
        return StepOutcome(output={}, error=f"Invalid delay duration {amount!r}")
    delayed_ms = int(amount * _DELAY_UNITS_MS.get(unit, 1000))
    return StepOutcome(
        output={"delayed_ms": delayed_ms, "output": f"Waited {amount:g} {unit}"},
        duration_ms=delayed_ms,
    )


def simulate_action(node: Node, effective: dict[str, Any], context: RuntimeContext) -> StepOutcome:
    """Produce the stub outcome for a pass-through action node."""
    match node.type:
        case NodeType.API_CALL:
            return _api_call(node, effective, context)
        case NodeType.SQL:
            return _sql(node, effective, context)
        case NodeType.LLM:
            return _llm(node, effective)
        case NodeType.APPROVAL:
            return _approval(effective, context)
        case NodeType.KNOWLEDGE_RETRIEVAL:
            return _knowledge_retrieval(effective)
        case NodeType.DOCUMENT_EXTRACTOR:
            return _document_extractor(effective)
        case NodeType.DELAY:
            return _delay(effective)
        case NodeType.SCRIPT:
            return StepOutcome(
                output={"result": "Script Executed", "output": "Script Executed"},
                duration_ms=duration_for(NodeType.SCRIPT),
            )
        case NodeType.DATA_OP:
            source = effective.get("source")
            result = source if source not in (None, "") else context.payload
            return StepOutcome(
                output={"result": result}, duration_ms=duration_for(NodeType.DATA_OP)
            )
        case NodeType.NOTIFICATION:
            channel = effective.get("channel", "email")
            return StepOutcome(
                output={
                    "sent": True,
                    "channel": channel,
                    "recipients": effective.get("recipients", ""),
                    "output": f"Notification sent via {channel}",
                },
                duration_ms=duration_for(NodeType.NOTIFICATION),
            )
        case NodeType.CC:
            return StepOutcome(
                output={
                    "sent": True,
                    "recipients": effective.get("recipients", ""),
                    "output": "CC sent",
                },
                duration_ms=duration_for(NodeType.CC),
            )
        case _:
            return StepOutcome(output={"processed": True}, duration_ms=duration_for(node.type))

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from cortex_chat.core.types import AgentStep, AgentTrace

MAX_TRACE_HEADER_CHARS = 4000

_TEXT_KEYS = ("response", "text", "answer", "content", "message")
_DECISION_KEYS = ("decision", "agent_decision")

_CAPABILITY_HINTS = (
    ("gmail", ("gmail", "email", "mail", "inbox")),
    ("google_calendar", ("calendar", "meeting", "event", "schedule")),
    ("google_drive", ("drive", "doc", "sheet", "file")),
    ("web_search", ("search", "web", "browse")),
)


def _capability_for(name: str) -> Optional[str]:
    lowered = name.lower()
    for capability, hints in _CAPABILITY_HINTS:
        if any(hint in lowered for hint in hints):
            return capability
    return None


def _safe_str(value: Any, max_len: int = 240) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_len]


def _safe_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    return round(min(1.0, max(0.0, confidence)), 3)


def extract_response_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return ""
    for key in _TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, dict):
            nested = value.get("content")
            if isinstance(nested, str):
                return nested
    return ""


def _parse_steps(raw: Any) -> List[AgentStep]:
    steps: List[AgentStep] = []
    if not isinstance(raw, list):
        return steps
    for item in raw:
        if not isinstance(item, dict):
            continue
        action = _safe_str(item.get("action") or item.get("type"), 64)
        tool = _safe_str(item.get("tool") or item.get("tool_name"), 64)
        if not action and not tool:
            continue
        success = item.get("success", item.get("ok"))
        steps.append(
            AgentStep(
                action=action or "tool_call",
                tool=tool,
                success=success if isinstance(success, bool) else None,
                reason=_safe_str(item.get("reason"), 160),
            )
        )
    return steps


def build_agent_trace(decision: Any) -> Optional[AgentTrace]:
    if not isinstance(decision, dict):
        return None
    action = _safe_str(decision.get("action"), 64) or "respond"
    steps = _parse_steps(decision.get("steps") or decision.get("pipeline"))

    capabilities: List[str] = []
    sources = [step.tool or step.action for step in steps] if steps else [action]
    for source in sources:
        capability = _capability_for(source)
        if capability and capability not in capabilities:
            capabilities.append(capability)

    return AgentTrace(
        action=action,
        reason=_safe_str(decision.get("reason")),
        confidence=_safe_confidence(decision.get("confidence")),
        capabilities=capabilities,
        steps=steps,
    )


def parse_agent_payload(payload: Any) -> Tuple[str, Optional[AgentTrace]]:
    text = extract_response_text(payload)
    decision = None
    if isinstance(payload, dict):
        for key in _DECISION_KEYS:
            if isinstance(payload.get(key), dict):
                decision = payload[key]
                break
    return text, build_agent_trace(decision)


def encode_trace_header(trace: AgentTrace) -> str:
    encoded = json.dumps(trace.to_payload(), ensure_ascii=True, separators=(",", ":"))
    if len(encoded) <= MAX_TRACE_HEADER_CHARS:
        return encoded
    compact = trace.to_payload(include_steps=False)
    compact.pop("reason", None)
    return json.dumps(compact, ensure_ascii=True, separators=(",", ":"))[:MAX_TRACE_HEADER_CHARS]


def decode_trace_header(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None

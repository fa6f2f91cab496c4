from __future__ import annotations

import re
from typing import Optional

# First match wins, in this order.
_TOOL_INTENTS = (
    ("gmail", "Gmail", (r"e-?mails?", r"gmail", r"inbox", r"mail", r"unread messages?")),
    (
        "calendar",
        "Google Calendar",
        (r"calendar", r"meetings?", r"schedule", r"appointments?", r"events?\s+(?:today|tomorrow|this week)"),
    ),
    ("drive", "Google Drive", (r"drive", r"google docs?", r"documents?", r"spreadsheets?", r"sheets?", r"files?")),
    (
        "web_search",
        "web search",
        (r"search the web", r"web search", r"google it", r"look up", r"latest news", r"browse", r"search online"),
    ),
)

_COMPILED = tuple(
    (key, label, re.compile(r"\b(?:" + "|".join(patterns) + r")\b", flags=re.IGNORECASE))
    for key, label, patterns in _TOOL_INTENTS
)


def detect_tool_intent(text: str) -> Optional[str]:
    for key, _, pattern in _COMPILED:
        if pattern.search(text or ""):
            return key
    return None


def tool_label(intent: str) -> str:
    for key, label, _ in _COMPILED:
        if key == intent:
            return label
    return intent


def agent_unavailable_reply(intent: str) -> str:
    label = tool_label(intent)
    return (
        f"Sorry, the agent service is unavailable right now, so I can't use {label} for this request. "
        "Answering without it would only be a guess. "
        "Please try again in a moment."
    )

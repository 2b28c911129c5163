"""Progressive rendering of a model response that is still arriving.

extract() is re-run on the whole buffer every time a stream chunk lands. It
keeps no state between calls, so the same buffer and hint always give the
same text and the caller can run it as often as it likes.

Precedence, first match wins:
    "outcome"        only the outcome string, never what follows it
    "question"       question text, blank line, options, placeholder lines
    "player"/"child" profile lines and descriptions
    ending sections  each section as it arrives
Plain prose passes through untouched. Structured output with no usable
marker yet shows nothing (or an empty question skeleton for the question
hint, so the layout does not jump once options start arriving).
"""

from __future__ import annotations

import json
import re
from typing import Any, NamedTuple

from childsim.jsontext import (
    balanced_span,
    closed_string_field,
    has_key,
    object_body,
    option_items,
    read_bool_field,
    read_int_field,
    read_string_field,
    strip_fences,
)
from childsim.models import OPTION_SLOTS, RequestKind

ELLIPSIS = "..."

_OPTIONS_RE = re.compile(r'"options"\s*:\s*\[')

_PARENT_ROLES = {"male": "father", "female": "mother", "nonBinary": "parent"}
_CHILD_LABELS = {"male": "boy", "female": "girl"}
_WEALTH_LABELS = {"poor": "poor", "middle": "middle-class", "wealthy": "wealthy"}
EXTREME_MARKER = "(!) "

_ENDING_SECTIONS = [
    ("child_status_at_18", "At eighteen"),
    ("parent_evaluation", "You as a parent"),
    ("future_outlook", "Looking ahead"),
    ("summary_narrative", "The story"),
]


class Projection(NamedTuple):
    renderable_text: str
    is_structured_json: bool


def extract(buffer: str, kind_hint: RequestKind | None = None) -> Projection:
    """Best renderable view of ``buffer`` so far."""
    buffer = buffer or ""
    content = strip_fences(buffer)

    if has_key(content, "outcome"):
        return Projection(_outcome_text(content), True)
    if has_key(content, "question"):
        return Projection(_question_text(content), True)
    if has_key(content, "player") or has_key(content, "child"):
        return Projection(_initial_state_text(content), True)
    if any(has_key(content, key) for key, _ in _ENDING_SECTIONS):
        return Projection(_ending_text(content), True)

    if "{" in content or "```" in buffer:
        if kind_hint is RequestKind.QUESTION:
            return Projection(_question_layout("", []), True)
        return Projection("", True)
    return Projection(buffer, False)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

def _outcome_text(content: str) -> str:
    found = read_string_field(content, "outcome")
    if found is None:
        return ""
    text, closed = found
    return text if closed else text + ELLIPSIS


# ---------------------------------------------------------------------------
# Question
# ---------------------------------------------------------------------------

def _question_layout(question_text: str, option_lines: list[str]) -> str:
    """Question, a blank line, then exactly four option slots."""
    shown = option_lines[:OPTION_SLOTS]
    lines = [question_text, ""] + shown + [""] * (OPTION_SLOTS - len(shown))
    return "\n".join(lines)


def _option_line(option_id: str, text: str, cost: Any) -> str:
    line = f"{option_id}: {text}"
    if isinstance(cost, int) and not isinstance(cost, bool) and cost:
        line += f" (cost: {cost})"
    return line


def _option_lines(content: str) -> list[str]:
    m = _OPTIONS_RE.search(content)
    if m is None:
        return []

    span = balanced_span(content, "[", m.end() - 1)
    if span is not None:
        try:
            items = json.loads(content[span[0]:span[1]])
        except (json.JSONDecodeError, RecursionError):
            items = None
        if isinstance(items, list):
            return [
                _option_line(str(item["id"]), item["text"], item.get("cost"))
                for item in items
                if isinstance(item, dict)
                and item.get("id") is not None
                and isinstance(item.get("text"), str)
            ]

    return [_option_line(*item) for item in option_items(content[m.end():])]


def _question_text(content: str) -> str:
    found = read_string_field(content, "question")
    text, closed = found if found is not None else ("", False)
    if not closed or _OPTIONS_RE.search(content) is None:
        text += ELLIPSIS
    if read_bool_field(content, "isExtremeEvent"):
        # marked in place so the layout height never changes
        text = EXTREME_MARKER + text
    return _question_layout(text, _option_lines(content))


# ---------------------------------------------------------------------------
# Initial state
# ---------------------------------------------------------------------------

def _initial_state_text(content: str) -> str:
    lines: list[str] = []

    player = object_body(content, "player")
    if player is not None:
        parts = []
        gender = closed_string_field(player, "gender")
        if gender is not None:
            parts.append(_PARENT_ROLES.get(gender, "parent"))
        age = read_int_field(player, "age")
        if age is not None:
            parts.append(f"age {age}")
        if parts:
            lines.append("You: " + ", ".join(parts))

    child = object_body(content, "child")
    if child is not None:
        name = closed_string_field(child, "name")
        gender = closed_string_field(child, "gender")
        if name is not None:
            label = f" ({_CHILD_LABELS[gender]})" if gender in _CHILD_LABELS else ""
            lines.append(f"Your child: {name}{label}")
        elif gender in _CHILD_LABELS:
            lines.append(f"Your child: a {_CHILD_LABELS[gender]}")

    for key in ("playerDescription", "childDescription"):
        found = read_string_field(content, key)
        if found is None:
            continue
        text, closed = found
        lines.extend(["", text if closed else text + ELLIPSIS])

    tier = closed_string_field(content, "wealthTier")
    if tier in _WEALTH_LABELS:
        lines.extend(["", f"Family wealth: {_WEALTH_LABELS[tier]}"])

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Ending
# ---------------------------------------------------------------------------

def _ending_text(content: str) -> str:
    blocks: list[str] = []
    for key, title in _ENDING_SECTIONS:
        found = read_string_field(content, key)
        if found is None:
            continue
        text, closed = found
        blocks.append(f"{title}:\n{text if closed else text + ELLIPSIS}")
    return "\n\n".join(blocks)

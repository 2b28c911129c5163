"""Low-level readers for JSON-shaped text that may be malformed or incomplete.

Shared by the parser (complete responses) and the extractor (responses that
are still arriving). Nothing here raises on bad input; readers return None
or a best-effort value instead.
"""

from __future__ import annotations

import re

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7e]")
_BAD_ESCAPE_RE = re.compile(r'\\(?!["\\/bfnrt]|u[0-9a-fA-F]{4})')
_TRAILING_BRACKET_RE = re.compile(r"\]\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

# {"id": "A", "text": "...", "cost": 3} — cost is optional and only counted
# once a terminator follows it.
OPTION_ITEM_RE = re.compile(
    r'"id"\s*:\s*"([A-Ea-e])"\s*,\s*"text"\s*:\s*"((?:[^"\\]|\\.)*)"'
    r'(?:\s*,\s*"cost"\s*:\s*(-?\d+)(?=\s*[,}\]]))?'
)


# ---------------------------------------------------------------------------
# Whole-text cleanup
# ---------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    """Remove markdown code fence markers and surrounding whitespace."""
    return _FENCE_RE.sub("", text).strip()


def drop_control_chars(text: str) -> str:
    """Drop C0 control characters, keeping tab, newline and carriage return."""
    return _CONTROL_RE.sub("", text)


def ascii_only(text: str) -> str:
    """Keep printable ASCII and remove escape sequences JSON would reject."""
    return _BAD_ESCAPE_RE.sub("", _NON_PRINTABLE_RE.sub("", text))


def close_trailing_bracket(text: str) -> str:
    """Rewrite a final ``]`` into ``}`` when an object was closed as an array."""
    if text.startswith("{"):
        return _TRAILING_BRACKET_RE.sub("}", text)
    return text


def drop_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


# ---------------------------------------------------------------------------
# Structural scanning
# ---------------------------------------------------------------------------

def balanced_span(text: str, open_ch: str = "{", start: int = 0) -> tuple[int, int] | None:
    """Return (begin, end) of the first balanced ``{...}`` or ``[...]`` span.

    The scan skips brackets inside string literals and honours backslash
    escapes. Returns None if no opener is found or the span never closes.
    """
    close_ch = "}" if open_ch == "{" else "]"
    begin = text.find(open_ch, start)
    if begin < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return begin, i + 1
    return None


def has_key(text: str, key: str) -> bool:
    return re.search(r'"%s"\s*:' % re.escape(key), text) is not None


def object_body(text: str, key: str) -> str | None:
    """Text of the object value under ``key``; the tail if it is still open."""
    m = re.search(r'"%s"\s*:\s*\{' % re.escape(key), text)
    if m is None:
        return None
    begin = m.end() - 1
    span = balanced_span(text, "{", begin)
    if span is None:
        return text[begin:]
    return text[span[0]:span[1]]


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------

def find_string_value(text: str, key: str, start: int = 0) -> int | None:
    """Index just past the opening quote of ``"key": "``, or None."""
    m = re.compile(r'"%s"\s*:\s*"' % re.escape(key)).search(text, start)
    return m.end() if m else None


def read_string(text: str, pos: int) -> tuple[str, bool, int]:
    """Decode a JSON string body that starts at ``pos``.

    Returns ``(value, closed, end)``. ``end`` is the index after the closing
    quote, or ``len(text)`` when the string is still open. A trailing escape
    sequence that has not fully arrived is left out of ``value``.
    """
    out: list[str] = []
    n = len(text)
    i = pos
    while i < n:
        ch = text[i]
        if ch == '"':
            return "".join(out), True, i + 1
        if ch != "\\":
            out.append(ch)
            i += 1
            continue

        if i + 1 >= n:
            break
        nxt = text[i + 1]
        if nxt != "u":
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue

        digits = text[i + 2:i + 6]
        if len(digits) < 4:
            break
        try:
            code = int(digits, 16)
        except ValueError:
            i += 2
            continue
        i += 6
        if 0xD800 <= code <= 0xDBFF:
            if i >= n or (text[i] == "\\" and i + 6 > n):
                # low half of the surrogate pair is still arriving
                break
            low = text[i + 2:i + 6] if text.startswith("\\u", i) else ""
            try:
                low_code = int(low, 16) if len(low) == 4 else -1
            except ValueError:
                low_code = -1
            if 0xDC00 <= low_code <= 0xDFFF:
                out.append(chr(0x10000 + ((code - 0xD800) << 10) + (low_code - 0xDC00)))
                i += 6
            else:
                out.append("\ufffd")
        elif 0xDC00 <= code <= 0xDFFF:
            out.append("\ufffd")
        else:
            out.append(chr(code))
    return "".join(out), False, n


def read_string_field(text: str, key: str, start: int = 0) -> tuple[str, bool] | None:
    """Decoded value of ``"key": "..."`` plus whether it is closed."""
    pos = find_string_value(text, key, start)
    if pos is None:
        return None
    value, closed, _ = read_string(text, pos)
    return value, closed


def closed_string_field(text: str, key: str) -> str | None:
    """Value of a string field, only once its closing quote has arrived."""
    found = read_string_field(text, key)
    if found is None or not found[1]:
        return None
    return found[0]


def read_int_field(text: str, key: str) -> int | None:
    """Value of an integer field, only once a terminator follows it."""
    m = re.search(r'"%s"\s*:\s*(-?\d+)(?=\s*[,}\]\n])' % re.escape(key), text)
    return int(m.group(1)) if m else None


def read_bool_field(text: str, key: str) -> bool | None:
    m = re.search(r'"%s"\s*:\s*(true|false)\b' % re.escape(key), text)
    return None if m is None else m.group(1) == "true"


def option_items(text: str) -> list[tuple[str, str, int | None]]:
    """Every complete ``{"id", "text"[, "cost"]}`` option fragment in order."""
    items: list[tuple[str, str, int | None]] = []
    for m in OPTION_ITEM_RE.finditer(text):
        value, _, _ = read_string(m.group(2) + '"', 0)
        cost = int(m.group(3)) if m.group(3) is not None else None
        items.append((m.group(1).upper(), value, cost))
    return items

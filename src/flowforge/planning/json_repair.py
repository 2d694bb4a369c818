"""Local repair of almost-JSON model output.

Models sometimes wrap JSON in code fences, add prose after it, or stop
mid-object when they hit the token limit. ``repair_json`` fixes those cases
with a single pass; anything it cannot fix is left for the caller to reject.
"""

import json
import re
from typing import Any

FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)(?:\n?```|$)", re.DOTALL)

_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Return the content of the first fenced block, or the text unchanged."""
    if "```" not in text:
        return text
    match = FENCE_PATTERN.search(text)
    return match.group(1) if match else text


def _scan(text: str) -> tuple[int, list[str], bool]:
    """Scan JSON text tracking strings and nesting.

    Returns:
        (end index just past the top-level value or -1, open bracket stack,
        whether the text ends inside a string)
    """
    stack: list[str] = []
    in_string = False
    escape = False
    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                return i + 1, [], False
    return -1, stack, in_string


def remove_trailing_commas(text: str) -> str:
    """Drop commas directly followed by a closing bracket, outside strings."""
    out: list[str] = []
    in_string = False
    escape = False
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            rest = text[i + 1 :].lstrip()
            if rest[:1] in ("}", "]"):
                continue
        out.append(ch)
    return "".join(out)


def repair_json(text: str) -> str:
    """Apply the repair steps in order.

    1. strip code fences
    2. truncate after the top-level value
    3. close an unterminated string
    4. close open brackets and braces in stack order
    5. remove trailing commas
    """
    repaired = strip_code_fences(text).strip()

    starts = [i for i in (repaired.find("{"), repaired.find("[")) if i >= 0]
    if not starts:
        return repaired
    repaired = repaired[min(starts) :]

    end, stack, in_string = _scan(repaired)
    if end >= 0:
        repaired = repaired[:end]
    else:
        if in_string:
            repaired += '"'
        repaired = repaired.rstrip()
        for opener in reversed(stack):
            repaired += _CLOSERS[opener]

    return remove_trailing_commas(repaired)


def parse_json_with_repair(text: str) -> tuple[Any, bool]:
    """Parse JSON, repairing it once if needed.

    Returns:
        (parsed value, whether repair was needed)

    Raises:
        json.JSONDecodeError: If the repaired text still does not parse
    """
    try:
        return json.loads(text), False
    except json.JSONDecodeError:
        return json.loads(repair_json(text)), True

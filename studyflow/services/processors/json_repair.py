"""
Recovery of JSON answers from completion models.

Long structured answers are regularly cut off at the token limit or
wrapped in markdown fences. ``repair_truncated_json`` tries, in order: the
raw text, the first fenced block, and finally a trimmed copy where an
unterminated string and any dangling key are cut away and open arrays and
objects are closed.
"""

import json
import re
from typing import Any, List, Optional, Tuple

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_DANGLING_KEY = re.compile(r'"[^"]*"\s*:\s*$')
_TRAILING_COMMA = re.compile(r",\s*$")


def _loads(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _scan(text: str) -> Tuple[Optional[int], List[str]]:
    """Index of an unterminated string's opening quote, and the closers still owed."""
    closers: List[str] = []
    open_quote: Optional[int] = None
    escape = False
    for i, ch in enumerate(text):
        if escape:
            escape = False
            continue
        if open_quote is not None:
            if ch == "\\":
                escape = True
            elif ch == '"':
                open_quote = None
            continue
        if ch == '"':
            open_quote = i
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]" and closers:
            closers.pop()
    return open_quote, closers


def repair_truncated_json(raw: str) -> Optional[Any]:
    """Best-effort parse; ``None`` when nothing usable can be recovered."""
    if not raw:
        return None

    parsed = _loads(raw)
    if parsed is not None:
        return parsed

    fenced = _FENCED.search(raw)
    if fenced:
        parsed = _loads(fenced.group(1).strip())
        if parsed is not None:
            return parsed

    starts = [i for i in (raw.find("{"), raw.find("[")) if i != -1]
    if not starts:
        return None
    fixed = raw[min(starts):].rstrip()
    if fixed.endswith("```"):
        fixed = fixed[:-3].rstrip()

    open_quote, _ = _scan(fixed)
    if open_quote is not None:
        fixed = fixed[:open_quote].rstrip()
    fixed = _DANGLING_KEY.sub("", fixed).rstrip()
    fixed = _TRAILING_COMMA.sub("", fixed)

    _, closers = _scan(fixed)
    return _loads(fixed + "".join(reversed(closers)))

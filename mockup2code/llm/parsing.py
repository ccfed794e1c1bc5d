"""Recovering structured payloads from free-form model responses."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_FENCE = re.compile(r"^```[\w.+-]*\s*$", re.MULTILINE)
_DOC_START = re.compile(r"<!doctype\s+html|<html[\s>]", re.IGNORECASE)
_DOC_END = re.compile(r"</html\s*>", re.IGNORECASE)


def first_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block in ``text``.

    Braces inside JSON string literals (including escaped quotes) do not count
    towards the balance, so prose before or after the object is ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # unbalanced from this opening brace; try the next one
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the response into exactly one JSON object or raise ``ValueError``."""
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except (TypeError, ValueError):
        pass
    text = text or ""
    cursor = 0
    while True:
        block = first_json_object(text[cursor:])
        if block is None:
            break
        try:
            data = json.loads(block)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
        # skip past a non-JSON brace block such as "{like this}" in prose
        cursor += text[cursor:].find(block) + 1
    raise ValueError("response contains no JSON object")


def strip_to_markup(text: str) -> Optional[str]:
    """Drop fences and surrounding prose, returning the HTML document or None."""
    if not text:
        return None
    cleaned = _FENCE.sub("", text)
    start = _DOC_START.search(cleaned)
    if not start:
        return None
    end = None
    for end in _DOC_END.finditer(cleaned, start.start()):
        pass
    if end is None:
        return None
    return cleaned[start.start() : end.end()].strip()

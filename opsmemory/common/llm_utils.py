"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```[a-zA-Z]*\n?")


def strip_code_fences(raw: str) -> str:
    """Remove markdown code fences (```json, ```mermaid, ```) from a response."""
    if not raw:
        return ""
    return _FENCE_RE.sub("", raw).strip()


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict

    Only JSON objects are accepted; a bare list or scalar yields an empty dict.
    """
    if not raw:
        return {}

    text = strip_code_fences(raw)

    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else {}
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            data = json.loads(raw[start:end])
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}

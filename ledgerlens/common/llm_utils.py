"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from typing import Dict, Iterable


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Direct json.loads on the raw string
    3. Extract substring between first '{' and last '}', then json.loads
    4. Return empty dict
    """
    if not raw:
        return {}

    text = raw.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(raw[start:end])
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}


def extract_labeled_fields(raw: str, labels: Iterable[str]) -> Dict[str, str]:
    """Extract ``LABEL: value`` sections from free text.

    A value runs until the next known label at the start of a line, so
    multi-line answers survive. Labels are matched case-insensitively and
    may be wrapped in markdown bold (``**ANSWER:**``). Missing labels are
    simply absent from the result.
    """
    if not raw:
        return {}

    labels = list(labels)
    alternatives = "|".join(re.escape(label) for label in labels)
    header = re.compile(
        rf"^[ \t>*#-]*\**[ \t]*({alternatives})[ \t]*\**[ \t]*:[ \t]*\**",
        re.IGNORECASE | re.MULTILINE,
    )

    matches = list(header.finditer(raw))
    fields: Dict[str, str] = {}
    for i, match in enumerate(matches):
        label = match.group(1).upper()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(raw)
        value = raw[match.end():end].strip().strip("*").strip()
        # First occurrence wins
        if label not in fields and value:
            fields[label] = value
    return fields

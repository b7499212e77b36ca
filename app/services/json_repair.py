"""
JSON repair for model output.

Models asked for a JSON object still wrap it in markdown fences, prepend a
sentence, or leave a trailing comma. These are stripped before parsing.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class JSONRepairError(ValueError):
    def __init__(self, message: str, original_text: str):
        super().__init__(message)
        self.original_text = original_text


def repair_json(text: str) -> str:
    """Return ``text`` as parseable JSON, or raise ``JSONRepairError``."""
    if not text or not text.strip():
        raise JSONRepairError("Empty model output", text or "")

    try:
        json.loads(text)
        return text
    except json.JSONDecodeError:
        pass

    repaired = _strip_fences(text)
    repaired = _outermost_object(repaired)
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    repaired = _close_brackets(repaired)

    try:
        json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise JSONRepairError(f"Unrepairable JSON: {exc}", text) from exc
    logger.info("Repaired malformed JSON from model output")
    return repaired


def try_parse_json(text: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """(object, None) on success, (None, reason) otherwise."""
    try:
        parsed = json.loads(repair_json(text))
    except JSONRepairError as exc:
        return None, str(exc)
    if not isinstance(parsed, dict):
        return None, "Expected a JSON object"
    return parsed, None


def _strip_fences(text: str) -> str:
    text = re.sub(r"```(?:json)?\s*\n?", "", text, flags=re.IGNORECASE)
    return text.strip()


def _outermost_object(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    if start != -1:
        return text[start:]
    return text


def _close_brackets(text: str) -> str:
    missing_braces = text.count("{") - text.count("}")
    missing_brackets = text.count("[") - text.count("]")
    if missing_brackets > 0:
        text += "]" * missing_brackets
    if missing_braces > 0:
        text += "}" * missing_braces
    return text

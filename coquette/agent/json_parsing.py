"""
Tolerant JSON extraction from model output.

Models wrap JSON in code fences, prepend prose, or emit almost-JSON. Parsing
runs in two stages:

- strict: strip fences, slice the outermost object, decode and validate
  against a pydantic schema (``parse_json_model``)
- salvage: pull individual fields with regexes and decode any embedded
  objects that are themselves valid (``find_bool``, ``find_string``,
  ``find_number``, ``iter_embedded_objects``)
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ParseError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)

_decoder = json.JSONDecoder()


def clean_json_response(text: str) -> str:
    """
    Remove code fences and surrounding prose.

    Returns the substring from the first ``{`` to the last ``}`` when both
    exist, otherwise the fence-stripped text.
    """
    cleaned = CODE_FENCE.sub("", text).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def extract_first_complete_json(text: str) -> Optional[str]:
    """
    Find the first balanced ``{...}`` object, honouring string literals.

    Args:
        text: Text that may contain a JSON object followed by other content

    Returns:
        The object text, or None when no balanced object exists
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string:
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
    return None


def loads_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Decode the JSON object contained in model output.

    Returns:
        The decoded dict, or None when nothing decodes to an object
    """
    candidates = [clean_json_response(text)]
    first_complete = extract_first_complete_json(CODE_FENCE.sub("", text))
    if first_complete and first_complete != candidates[0]:
        candidates.append(first_complete)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_json_model(text: str, model: Type[M]) -> M:
    """
    Strict stage: decode and validate model output against a schema.

    Raises:
        ParseError: If no object decodes or it does not fit the schema
    """
    data = loads_object(text)
    if data is None:
        raise ParseError("no JSON object found in model output")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"JSON does not match {model.__name__}: {e.error_count()} error(s)") from e


def _key_pattern(key: str, value_pattern: str) -> "re.Pattern[str]":
    return re.compile(rf'"{re.escape(key)}"\s*:\s*{value_pattern}', re.IGNORECASE)


def find_bool(text: str, *keys: str) -> Optional[bool]:
    """Salvage a boolean field by key."""
    for key in keys:
        match = _key_pattern(key, r"(true|false)").search(text)
        if match:
            return match.group(1).lower() == "true"
    return None


def find_string(text: str, *keys: str) -> Optional[str]:
    """Salvage a string field by key, decoding JSON escapes where possible."""
    for key in keys:
        match = _key_pattern(key, r'"((?:[^"\\]|\\.)*)"').search(text)
        if match:
            raw = match.group(1)
            try:
                return json.loads(f'"{raw}"')
            except json.JSONDecodeError:
                return raw
    return None


def find_number(text: str, *keys: str) -> Optional[float]:
    """Salvage a numeric field by key."""
    for key in keys:
        match = _key_pattern(key, r"(-?\d+(?:\.\d+)?)").search(text)
        if match:
            return float(match.group(1))
    return None


def iter_embedded_objects(text: str) -> Iterator[Dict[str, Any]]:
    """
    Yield every valid JSON object embedded in ``text``.

    Scanning resumes after each decoded object, so objects nested inside a
    yielded one are not yielded again. When an outer object is malformed the
    scan moves on to the next ``{`` and may find valid inner objects.
    """
    index = text.find("{")
    while index != -1:
        try:
            value, end = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            yield value
        index = text.find("{", end)

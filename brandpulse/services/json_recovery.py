"""Recover structured JSON documents from raw model output.

Models regularly wrap JSON in markdown fences, forget commas between lines,
leave trailing commas, emit typographic quotes or surround the object with
prose. ``parse_json`` walks a ladder of increasingly aggressive repairs and
stops at the first stage that yields a JSON object or array. It never raises;
``None`` means no usable structured output.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_VALID_ESCAPES = frozenset('nrt"\\/bf')

# "value"\n  "key"  ->  "value",\n  "key"
_MISSING_COMMA_STRINGS_RE = re.compile(r'"[ \t\r]*\n(\s*)"')
# }\n  {  ->  },\n  {
_MISSING_COMMA_OBJECTS_RE = re.compile(r"}[ \t\r]*\n(\s*){")
# ]\n  "  ->  ],\n  "
_MISSING_COMMA_ARRAY_KEY_RE = re.compile(r'][ \t\r]*\n(\s*)"')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

_TYPOGRAPHIC = {
    "\u201c": '"',
    "\u201d": '"',
    "\u201e": '"',
    "\u201f": '"',
    "\u2033": '"',
    "\u2018": "'",
    "\u2019": "'",
    "\u201a": "'",
    "\u201b": "'",
    "\u2032": "'",
    "\u2013": "-",
    "\u2014": "-",
    "\u2015": "-",
    "\u2212": "-",
    "\u2026": "...",
    "\u00a0": " ",
}
_INVISIBLE = ("\ufeff", "\u200b", "\u200c", "\u200d", "\u2060")
_CLOSING_CONTEXT = frozenset(",}]:")

PREVIEW_CHARS = 200


@dataclass
class ParseReport:
    document: Any = None
    stage: str | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.document is not None


def sanitize(text: str) -> str:
    """Strip code fences and neutralize stray control characters.

    Valid JSON escape sequences are preserved; an invalid backslash escape is
    turned into a literal backslash.
    """
    text = _FENCE_RE.sub("", text).strip()

    out: list[str] = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char == "\\" and i + 1 < length:
            nxt = text[i + 1]
            if nxt in _VALID_ESCAPES:
                out.append(char + nxt)
                i += 2
                continue
            if nxt == "u":
                out.append(text[i : i + 6])
                i += 6
                continue
            out.append("\\\\")
            i += 1
            continue
        code = ord(char)
        if code < 32 and code not in (9, 10, 13):
            out.append(" ")
        else:
            out.append(char)
        i += 1
    return "".join(out)


def repair(text: str) -> str:
    """Apply line-level heuristics for the separators models tend to drop."""
    repaired = _MISSING_COMMA_STRINGS_RE.sub(r'",\n\1"', text)
    repaired = _MISSING_COMMA_OBJECTS_RE.sub(r"},\n\1{", repaired)
    repaired = _MISSING_COMMA_ARRAY_KEY_RE.sub(r'],\n\1"', repaired)
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    return repaired


def extract_balanced_object(text: str) -> str | None:
    """Return the first top-level ``{...}`` span, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        char = text[index]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def normalize_characters(text: str) -> str:
    """Map typographic punctuation to ASCII and drop BOM / zero-width characters."""
    for invisible in _INVISIBLE:
        text = text.replace(invisible, "")
    return text.translate(str.maketrans(_TYPOGRAPHIC))


def escape_inner_quotes(text: str) -> str:
    """Escape quote characters that sit mid-sentence inside a string value.

    Inside a string, a quote only closes it when the next non-blank character
    is a JSON delimiter (``, } ] :``) or the end of input. Any other quote,
    e.g. ``"He said "hi" twice"``, is escaped.
    """
    out: list[str] = []
    in_string = False
    escape_next = False
    length = len(text)
    for index, char in enumerate(text):
        if escape_next:
            escape_next = False
            out.append(char)
            continue
        if char == "\\" and in_string:
            escape_next = True
            out.append(char)
            continue
        if char != '"':
            out.append(char)
            continue
        if not in_string:
            in_string = True
            out.append(char)
            continue

        lookahead = index + 1
        while lookahead < length and text[lookahead] in " \t\r\n":
            lookahead += 1
        if lookahead >= length or text[lookahead] in _CLOSING_CONTEXT:
            in_string = False
            out.append(char)
        else:
            out.append('\\"')
    return "".join(out)


def _loads(text: str, *, strict: bool = True) -> Any:
    document = json.loads(text, strict=strict)
    if not isinstance(document, (dict, list)):
        raise ValueError(f"not a structured document ({type(document).__name__})")
    return document


def _sanitized_repaired(text: str) -> str:
    return repair(sanitize(text))


def _stage_direct(text: str) -> Any:
    return _loads(text)


def _stage_sanitized(text: str) -> Any:
    return _loads(sanitize(text), strict=False)


def _stage_repaired(text: str) -> Any:
    return _loads(_sanitized_repaired(text), strict=False)


def _stage_extracted(text: str) -> Any:
    extracted = extract_balanced_object(text)
    if extracted is None:
        raise ValueError("no balanced object found")
    try:
        return _loads(sanitize(extracted), strict=False)
    except ValueError:
        return _loads(_sanitized_repaired(extracted), strict=False)


def _stage_aggressive(text: str) -> Any:
    normalized = normalize_characters(text)
    candidate = escape_inner_quotes(_sanitized_repaired(normalized))
    try:
        return _loads(candidate, strict=False)
    except ValueError as first_error:
        extracted = extract_balanced_object(normalized)
        if extracted is None:
            raise first_error
        return _loads(escape_inner_quotes(_sanitized_repaired(extracted)), strict=False)


_STAGES = (
    ("direct", _stage_direct),
    ("sanitized", _stage_sanitized),
    ("repaired", _stage_repaired),
    ("extracted", _stage_extracted),
    ("aggressive", _stage_aggressive),
)


def parse_json_with_report(text: Any) -> ParseReport:
    report = ParseReport()
    if not isinstance(text, str) or not text.strip():
        report.errors["input"] = "empty or non-text input"
        return report

    for name, stage in _STAGES:
        try:
            report.document = stage(text)
        except (ValueError, RecursionError) as exc:  # JSONDecodeError is a ValueError
            report.errors[name] = str(exc)
            continue
        report.stage = name
        if name != "direct":
            logger.debug(f"JSON recovered at stage '{name}' ({len(text)} chars)")
        return report

    failure_data = {
        "errors": report.errors,
        "text_length": len(text),
        "first_chars": text[:PREVIEW_CHARS],
        "last_chars": text[-PREVIEW_CHARS:],
    }
    logger.warning(f"JSON parsing failed after all recovery attempts: {failure_data}")
    return report


def parse_json(text: Any) -> Any:
    """Parse model output into a JSON object/array, or ``None`` if unrecoverable."""
    return parse_json_with_report(text).document

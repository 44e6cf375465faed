"""Conversion of task variables to and from the robot command line contract."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from robot_worker.engine.models import convertible_subset
from robot_worker.worker.outcomes import OutputDefect

logger = logging.getLogger(__name__)

# Escape pairs are matched first so a backslash is never read as part of a quote.
_ESCAPE_OR_QUOTE = re.compile(r"\\.|[\"']")
_QUOTE_REWRITES = {'"': "'", "'": "\\u0027", '\\"': "\\u0022"}


@dataclass(slots=True)
class ParsedOutput:
    """Convertible output variables plus the defect found while parsing, if any."""

    variables: dict[str, object] = field(default_factory=dict)
    defect: OutputDefect | None = None
    dropped: tuple[str, ...] = ()


def to_process_input(variables: Mapping[str, object]) -> str:
    """Encode convertible variables as a compact object using single quotes.

    The robot CLI expects ``--input`` with single-quoted JSON, so the string
    delimiters become single quotes and quotes inside values are written as
    ``\\u0027`` and ``\\u0022`` escapes.
    """

    encoded = json.dumps(
        convertible_subset(variables),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return _ESCAPE_OR_QUOTE.sub(_swap_quote, encoded)


def _swap_quote(match: re.Match[str]) -> str:
    token = match.group(0)
    return _QUOTE_REWRITES.get(token, token)


def from_process_output(data: bytes | str, *, encoding: str = "utf-8") -> dict[str, object]:
    """Parse robot stdout into convertible variables; defects yield ``{}``."""

    parsed = parse_process_output(data, encoding=encoding)
    if parsed.defect is not None:
        logger.warning("Could not read output variables: %s", parsed.defect.value)
    return parsed.variables


def parse_process_output(data: bytes | str, *, encoding: str = "utf-8") -> ParsedOutput:
    text = data.decode(encoding, errors="replace") if isinstance(data, bytes) else data
    text = text.lstrip("\ufeff").strip()
    if not text:
        return ParsedOutput(defect=OutputDefect.EMPTY)

    payload = _load_json_like(text)
    if payload is None:
        payload = _load_last_object_line(text)
    if payload is None:
        return ParsedOutput(defect=OutputDefect.INVALID_JSON)
    if not isinstance(payload, dict):
        return ParsedOutput(defect=OutputDefect.NOT_AN_OBJECT)

    variables = convertible_subset(payload)
    dropped = tuple(name for name in payload if name not in variables)
    if dropped:
        logger.debug("Dropped non-convertible output variables: %s", ", ".join(dropped))
    return ParsedOutput(variables=variables, dropped=dropped)


def _load_json_like(text: str) -> object | None:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_single_to_double_quotes(text))
    except json.JSONDecodeError:
        return None


def _load_last_object_line(text: str) -> object | None:
    for line in reversed(text.splitlines()):
        candidate = line.strip()
        if candidate.startswith("{") and candidate.endswith("}"):
            return _load_json_like(candidate)
    return None


def _single_to_double_quotes(text: str) -> str:
    """Rewrite single-quoted string literals as JSON double-quoted literals."""

    out: list[str] = []
    quote: str | None = None
    index = 0
    while index < len(text):
        char = text[index]
        if quote is None:
            if char in {'"', "'"}:
                quote = char
                out.append('"')
            else:
                out.append(char)
            index += 1
            continue

        if char == "\\" and index + 1 < len(text):
            escaped = text[index + 1]
            if quote == "'" and escaped == "'":
                out.append("'")
            else:
                out.append(char + escaped)
            index += 2
            continue

        if char == quote:
            quote = None
            out.append('"')
        elif char == '"':
            out.append('\\"')
        else:
            out.append(char)
        index += 1
    return "".join(out)

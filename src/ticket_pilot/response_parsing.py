"""Interpret free-form reasoning-service output as a single JSON value.

The service is asked for JSON but routinely wraps it in code fences, adds prose
around it, or emits strings with raw newlines and Windows paths. Interpretation
finds the first balanced JSON span and tries progressively more aggressive
repairs, including a rewrite of JavaScript or Python object syntax, before
giving up with a bounded preview of the text.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, Callable

from ticket_pilot.errors import ResponseFormatError

PREVIEW_MAX_CHARS = 200
_MAX_START_CANDIDATES = 32
_SIMPLE_ESCAPES = frozenset('"\\/bfnrt')
_HEX_DIGITS = frozenset('0123456789abcdefABCDEF')
_LEADING_FENCE_RE = re.compile(r'^\s*```[A-Za-z0-9_+-]*[ \t]*\r?\n?')
_TRAILING_FENCE_RE = re.compile(r'\r?\n?[ \t]*```\s*$')
_BARE_TOKEN_RE = re.compile(r'[A-Za-z0-9_$+\-.]+')
_NUMBER_RE = re.compile(r'-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?')
_LITERALS = {
    'true': 'true', 'false': 'false', 'null': 'null',
    'True': 'true', 'False': 'false', 'None': 'null',
    'NaN': 'NaN', 'Infinity': 'Infinity', '-Infinity': '-Infinity',
}


@dataclass(frozen=True)
class ParsedOk:
    value: Any


@dataclass(frozen=True)
class ParseFailed:
    reason: str
    preview: str


ParseResult = ParsedOk | ParseFailed


def preview_text(text: str, *, max_chars: int = PREVIEW_MAX_CHARS) -> str:
    source = ' '.join(str(text or '').split())
    if len(source) <= max_chars:
        return source
    return source[:max_chars] + '...'


def strip_code_fences(text: str) -> str:
    stripped = _LEADING_FENCE_RE.sub('', str(text or ''), count=1)
    stripped = _TRAILING_FENCE_RE.sub('', stripped, count=1)
    return stripped.strip()


def _next_opening(text: str, start: int) -> int:
    brace = text.find('{', start)
    bracket = text.find('[', start)
    if brace < 0:
        return bracket
    if bracket < 0:
        return brace
    return min(brace, bracket)


def find_balanced_span(text: str, start: int) -> str | None:
    """Return the minimal balanced span opening at *start*, or None when unterminated."""
    depth = 0
    quote = ''
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == quote:
                quote = ''
            continue
        if char in '"\'':
            quote = char
        elif char in '{[':
            depth += 1
        elif char in '}]':
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def repair_invalid_escapes(text: str) -> str:
    out: list[str] = []
    in_string = False
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if not in_string:
            if char == '"':
                in_string = True
            out.append(char)
            index += 1
            continue
        if char == '"':
            in_string = False
            out.append(char)
            index += 1
            continue
        if char != '\\':
            out.append(char)
            index += 1
            continue
        following = text[index + 1] if index + 1 < length else ''
        if following in _SIMPLE_ESCAPES:
            out.append(char + following)
            index += 2
            continue
        if following == 'u':
            digits = text[index + 2:index + 6]
            if len(digits) == 4 and all(d in _HEX_DIGITS for d in digits):
                out.append(text[index:index + 6])
                index += 6
                continue
        out.append('\\\\')
        index += 1
    return ''.join(out)


def sanitize_control_characters(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            elif ord(char) < 0x20:
                out.append(f'\\u{ord(char):04x}')
                continue
        elif char == '"':
            in_string = True
        out.append(char)
    return ''.join(out)


def remove_trailing_commas(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            out.append(char)
            continue
        if char == '"':
            in_string = True
        elif char == ',':
            lookahead = index + 1
            while lookahead < length and text[lookahead] in ' \t\r\n':
                lookahead += 1
            if lookahead < length and text[lookahead] in '}]':
                continue
        out.append(char)
    return ''.join(out)


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read the string opening at *start* and return it as a JSON literal plus the index past it."""
    quote = text[start]
    out = ['"']
    index = start + 1
    length = len(text)
    while index < length:
        char = text[index]
        if char == '\\' and index + 1 < length:
            following = text[index + 1]
            out.append("'" if following == "'" else char + following)
            index += 2
            continue
        index += 1
        if char == quote:
            break
        if char == '"':
            out.append('\\"')
        elif ord(char) < 0x20:
            out.append(f'\\u{ord(char):04x}')
        else:
            out.append(char)
    out.append('"')
    return ''.join(out), index


def relax_json(text: str) -> str:
    """Rewrite JavaScript and Python flavoured object syntax into strict JSON.

    Handles single-quoted strings, ``//`` and ``/* */`` comments, Python literals,
    unquoted keys or words, and commas missing between adjacent values.
    """
    out: list[str] = []
    index = 0
    length = len(text)
    after_value = False
    while index < length:
        char = text[index]
        if text.startswith('//', index):
            end = text.find('\n', index)
            index = length if end < 0 else end
            continue
        if text.startswith('/*', index):
            end = text.find('*/', index + 2)
            index = length if end < 0 else end + 2
            continue
        if char in ' \t\r\n':
            out.append(char)
            index += 1
            continue
        if char in ',:':
            out.append(char)
            after_value = False
            index += 1
            continue
        if char in '}]':
            out.append(char)
            after_value = True
            index += 1
            continue
        if char in '"\'':
            literal, index = _read_string(text, index)
            token = literal
        elif char in '{[':
            index += 1
            token = char
        else:
            match = _BARE_TOKEN_RE.match(text, index)
            if match is None:
                out.append(char)
                index += 1
                continue
            word = match.group()
            index = match.end()
            if word in _LITERALS:
                token = _LITERALS[word]
            elif _NUMBER_RE.fullmatch(word):
                token = word
            else:
                token = json.dumps(word)
        if after_value:
            out.append(',')
        out.append(token)
        after_value = token not in ('{', '[')
    return ''.join(out)


_REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ('escape_repair', repair_invalid_escapes),
    ('control_character_sanitize', sanitize_control_characters),
    ('relaxed_syntax_repair', relax_json),
    ('trailing_comma_repair', remove_trailing_commas),
)


def _decode_span(span: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(span)
    except ValueError:
        pass
    candidate = span
    for _name, repair in _REPAIRS:
        candidate = repair(candidate)
        try:
            return True, json.loads(candidate)
        except ValueError:
            continue
    return False, None


def _select_object(value: Any) -> ParseResult | None:
    if isinstance(value, dict):
        return ParsedOk(value)
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict):
                return ParsedOk(item)
    return None


def interpret_response(raw: str) -> ParseResult:
    text = strip_code_fences(raw)
    if not text:
        return ParseFailed(reason='empty_response', preview='')

    start = _next_opening(text, 0)
    if start < 0:
        return ParseFailed(reason='no_json_delimiter', preview=preview_text(text))

    # Later candidates are only searched after the end of a rejected span so a
    # fragment nested inside a broken object is never returned.
    first_failure: ParseFailed | None = None
    attempts = 0
    while start >= 0 and attempts < _MAX_START_CANDIDATES:
        attempts += 1
        span = find_balanced_span(text, start)
        if span is None:
            first_failure = first_failure or ParseFailed(reason='unbalanced_json', preview=preview_text(text[start:]))
            break
        ok, value = _decode_span(span)
        if ok:
            selected = _select_object(value)
            if selected is not None:
                return selected
            first_failure = first_failure or ParseFailed(reason='array_without_object', preview=preview_text(span))
        else:
            first_failure = first_failure or ParseFailed(reason='invalid_json', preview=preview_text(span))
        start = _next_opening(text, start + len(span))
    if first_failure is None:
        first_failure = ParseFailed(reason='no_json_value', preview=preview_text(text))
    return first_failure


def parse_json_object(raw: str) -> dict:
    result = interpret_response(raw)
    if isinstance(result, ParseFailed):
        raise ResponseFormatError(
            f'reasoning service response is not valid JSON ({result.reason}): {result.preview}',
            preview=result.preview,
        )
    return result.value

"""Regex extraction for variable values.

Patterns are accepted in JavaScript flavour as well as Python's: named groups
written ``(?<name>...)`` and back-references ``\\k<name>`` are rewritten, and
a pattern wrapped in slashes (``/cpu_(.+)/i``) has its delimiters and flags
honoured.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern, Sequence

from ..errors import RegexCompileError
from .models import ExtractResult, PairValue, VariableValue, text_of

_JS_GROUP_RE = re.compile(r"\(\?<(?![=!])")
_JS_BACKREF_RE = re.compile(r"\\k<([A-Za-z_][A-Za-z0-9_]*)>")
_SLASHED_RE = re.compile(r"^/(.*)/([gimsuy]*)$", re.DOTALL)

_TEXT_GROUPS = ("text", "display")
_VALUE_GROUPS = ("value", "val")


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile a variable regex, translating JavaScript-only syntax.

    Raises
    ------
    RegexCompileError
        If the pattern is invalid.
    """
    flags = 0
    slashed = _SLASHED_RE.match(pattern)
    if slashed:
        pattern = slashed.group(1)
        if "i" in slashed.group(2):
            flags |= re.IGNORECASE
        if "m" in slashed.group(2):
            flags |= re.MULTILINE
        if "s" in slashed.group(2):
            flags |= re.DOTALL
    translated = _JS_GROUP_RE.sub("(?P<", pattern)
    translated = _JS_BACKREF_RE.sub(r"(?P=\1)", translated)
    try:
        return re.compile(translated, flags)
    except re.error as exc:
        raise RegexCompileError(
            f"Invalid regex {pattern!r}: {exc}",
            context="Variable regex failed",
            original_error=exc,
        ) from exc


def _first(groups: dict, names: Sequence[str]) -> Optional[str]:
    for name in names:
        if groups.get(name):
            return groups[name]
    return None


def extract(value: str, pattern: Pattern[str]) -> Optional[ExtractResult]:
    """Apply ``pattern`` to one raw value.

    Returns None when the pattern does not match or captures nothing usable.
    """
    match = pattern.search(value)
    if match is None:
        return None
    groups = match.groupdict()
    if groups:
        text = _first(groups, _TEXT_GROUPS)
        val = _first(groups, _VALUE_GROUPS)
        if text and val:
            return ExtractResult(text=text, value=val, raw=value)
        if text or val:
            chosen = text or val
            return ExtractResult(text=chosen, value=chosen, raw=value)
        first = next(iter(groups.values()))
        if first:
            return ExtractResult(text=first, value=first, raw=value)
        return None
    if pattern.groups and match.group(1):
        return ExtractResult(text=match.group(1), value=match.group(1), raw=value)
    if match.group(0):
        return ExtractResult(text=match.group(0), value=match.group(0), raw=value)
    return None


def sort_key(item: VariableValue):
    text = text_of(item)
    return (text.casefold(), text)


def apply_regex(values: Iterable[str], pattern: str) -> List[VariableValue]:
    """Extract, de-duplicate and sort values by display text.

    Pairs are de-duplicated on ``(text, value)``; bare strings on themselves.

    Raises
    ------
    RegexCompileError
        If ``pattern`` does not compile; callers decide how to degrade.
    """
    compiled = compile_pattern(pattern)
    seen = set()
    out: List[VariableValue] = []
    for raw in values:
        result = extract(raw, compiled)
        if result is None:
            continue
        item = result.as_value()
        key = (result.text, result.value) if isinstance(item, PairValue) else item
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return sorted(out, key=sort_key)

"""
Annotation pattern matching.

A pattern is a single regular expression. The marker kind and the message are
taken from the named groups ``kind`` and ``message`` when present; patterns
written for older releases with positional groups still work:

- two or more unnamed groups: group 1 is the kind, group 2 the message
- one unnamed group: it is the message, the kind is the last word before it
- no groups: the whole line is the message
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from codemarks.core import ConfigurationError

FALLBACK_KIND = "MARK"

_WORD = re.compile(r"[A-Za-z]+")


@dataclass(frozen=True)
class Match:
    """Fields extracted from one annotated line."""

    kind: str
    message: str


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """
    Compile an annotation pattern.

    Raises:
        ConfigurationError: If the pattern is not a valid regular expression.
    """
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Invalid annotation pattern {pattern!r}: {e}") from e


class PatternMatcher:
    """Decides whether a line is an annotation and extracts its fields."""

    def __init__(self, pattern: str, max_line_length: int | None = None) -> None:
        self.pattern = pattern
        self.regex = compile_pattern(pattern)
        self.max_line_length = max_line_length
        # Kinds are only normalised when the pattern itself ignores case.
        self.fold_kind = bool(self.regex.flags & re.IGNORECASE)

        names = self.regex.groupindex
        self._kind_group: int | str | None = "kind" if "kind" in names else None
        self._message_group: int | str | None = "message" if "message" in names else None

        if self._kind_group is None and self._message_group is None:
            if self.regex.groups >= 2:
                self._kind_group, self._message_group = 1, 2
            elif self.regex.groups == 1:
                self._message_group = 1

    def match(self, line: str) -> Match | None:
        """
        Match a single line.

        Never raises: empty or unmatched lines yield None. Lines of any length
        are matched unless a ``max_line_length`` cap was configured.
        """
        if not line:
            return None
        if self.max_line_length is not None and len(line) > self.max_line_length:
            return None

        m = self.regex.search(line)
        if m is None:
            return None

        message = self._group(m, self._message_group)
        if self._message_group is None:
            message = line
        message = (message or "").strip()

        kind = self._group(m, self._kind_group)
        if not kind:
            kind = self._infer_kind(m)

        kind = kind.strip()
        if self.fold_kind:
            kind = kind.upper()
        return Match(kind=kind, message=message)

    def _group(self, m: re.Match[str], group: int | str | None) -> str | None:
        if group is None:
            return None
        return m.group(group)

    def _infer_kind(self, m: re.Match[str]) -> str:
        end = m.end()
        if self._message_group is not None and m.start(self._message_group) >= 0:
            end = m.start(self._message_group)
        words = _WORD.findall(m.string[m.start():end])
        return words[-1] if words else FALLBACK_KIND

    def __repr__(self) -> str:
        return f"PatternMatcher({self.pattern!r})"

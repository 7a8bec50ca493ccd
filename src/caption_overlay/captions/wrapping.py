"""Caption text wrapping.

Splits user text on its own line breaks, then greedily packs words into
lines no longer than ``max_chars_per_line``. Words that cannot fit on any
line are hard-split.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

DEFAULT_MAX_CHARS_PER_LINE = 30

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class WrappedText:
    """Display lines in order; blank user lines are kept as ``""``."""

    lines: tuple[str, ...]
    max_chars_per_line: int = DEFAULT_MAX_CHARS_PER_LINE

    def __iter__(self) -> Iterator[str]:
        return iter(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    def __getitem__(self, index: int) -> str:
        return self.lines[index]

    @property
    def non_empty(self) -> list[tuple[int, str]]:
        """(position, line) pairs for lines that will actually be drawn."""
        return [(index, line) for index, line in enumerate(self.lines) if line]

    def to_text(self) -> str:
        return "\n".join(self.lines)


def _wrap_line(line: str, max_chars: int) -> list[str]:
    lines: list[str] = []
    current = ""

    for word in line.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
            continue

        if current:
            lines.append(current)

        while len(word) > max_chars:
            lines.append(word[:max_chars])
            word = word[max_chars:]
        current = word

    if current:
        lines.append(current)

    return lines


def wrap_text(text: str, max_chars_per_line: int = DEFAULT_MAX_CHARS_PER_LINE) -> WrappedText:
    """Wrap caption text into display lines.

    Args:
        text: Raw caption, possibly containing line breaks
        max_chars_per_line: Maximum characters on any output line

    Returns:
        WrappedText whose lines are all at most ``max_chars_per_line`` long

    Raises:
        ValueError: If ``max_chars_per_line`` is less than 1
    """
    if max_chars_per_line < 1:
        raise ValueError(f"max_chars_per_line must be at least 1, got {max_chars_per_line}")

    lines: list[str] = []
    for user_line in _LINE_BREAK.split(text):
        stripped = user_line.strip()
        if not stripped:
            lines.append("")
        elif len(stripped) <= max_chars_per_line:
            lines.append(stripped)
        else:
            lines.extend(_wrap_line(stripped, max_chars_per_line))

    return WrappedText(lines=tuple(lines), max_chars_per_line=max_chars_per_line)

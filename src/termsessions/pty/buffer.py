"""Rolling log buffer for session output."""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field


@dataclass
class SearchMatch:
    """A search hit inside a :class:`RollingBuffer`.

    ``line_number`` is 1-based within the current buffer contents.  When
    context was requested, ``context`` holds ``(line_number, text, is_match)``
    triples taken symmetrically around the hit.
    """

    line_number: int
    line: str
    context: list[tuple[int, str, bool]] = field(default_factory=list)


class RollingBuffer:
    """Bounded rolling buffer for PTY output lines.

    Stores up to ``max_lines`` lines in two parallel tracks:

    * **cleaned** (``_lines``) — ANSI-stripped, binary-sanitized text
      used for reads and searches.
    * **raw** (``_raw_lines``) — original terminal output preserving
      ANSI escape sequences, suitable for xterm.js-style rendering.

    When full, the oldest line is evicted first.  All mutation happens on
    the event loop thread, so no locking is needed.
    """

    def __init__(self, max_lines: int = 10_000) -> None:
        if max_lines <= 0:
            raise ValueError("max_lines must be positive")
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._raw_lines: deque[str] = deque(maxlen=max_lines)

    def append(self, line: str, raw_line: str | None = None) -> None:
        """Append a line to the buffer.

        Args:
            line: Cleaned (ANSI-stripped) text.
            raw_line: Original text with ANSI codes preserved.
                      Defaults to ``line`` if not provided.
        """
        self._lines.append(line)
        self._raw_lines.append(raw_line if raw_line is not None else line)

    def read_tail(self, n: int | None = None) -> list[str]:
        """Read the last ``n`` cleaned lines, or every line when ``n`` is None."""
        return self._tail(self._lines, n)

    def read_tail_raw(self, n: int | None = None) -> list[str]:
        """Read the last ``n`` raw lines (ANSI preserved)."""
        return self._tail(self._raw_lines, n)

    @staticmethod
    def _tail(lines: deque[str], n: int | None) -> list[str]:
        items = list(lines)
        if n is None or n <= 0:
            return items if n is None else []
        return items[-n:]

    def search(
        self, pattern: str, limit: int = 100, context_lines: int = 0
    ) -> list[SearchMatch]:
        """Search cleaned lines with a case-insensitive regular expression.

        Scans in insertion order and stops after ``limit`` matches.  Raises
        ``re.error`` for an invalid pattern.
        """
        compiled = re.compile(pattern, re.IGNORECASE)
        lines = list(self._lines)
        results: list[SearchMatch] = []
        for i, line in enumerate(lines):
            if not compiled.search(line):
                continue
            match = SearchMatch(line_number=i + 1, line=line)
            if context_lines > 0:
                start = max(0, i - context_lines)
                end = min(len(lines), i + context_lines + 1)
                match.context = [
                    (j + 1, lines[j], j == i) for j in range(start, end)
                ]
            results.append(match)
            if len(results) >= limit:
                break
        return results

    @property
    def line_count(self) -> int:
        """Current number of lines in the buffer."""
        return len(self._lines)

    def clear(self) -> None:
        """Clear the buffer."""
        self._lines.clear()
        self._raw_lines.clear()

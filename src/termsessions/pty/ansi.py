"""Terminal output cleaning: strip escape sequences before text is stored or searched."""

from __future__ import annotations

import re

# OSC (ESC ] ... BEL | ESC \), DCS/SOS/PM/APC (ESC P|X|^|_ ... ST),
# CSI including private modes (ESC [ ? 2004 h), charset selection (ESC ( B)
# and any other two-byte escape.
_ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[PX^_][^\x1b]*\x1b\\"
    r"|\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b[()][A-Za-z0-9]"
    r"|\x1b[@-Z\\-_=>]?"
)


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from output.

    Keeps printable chars, tabs, newlines, and carriage returns.
    Strips everything else (control chars, undefined code points, format chars).
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            if cp not in range(0xFFF9, 0xFFFC):
                cleaned.append(ch)
    return "".join(cleaned)


def collapse_carriage_returns(line: str) -> str:
    """Keep only the final state of a line rewritten with ``\\r``.

    Progress bars and spinners redraw a line in place, so
    ``"10%\\r50%\\r100%"`` becomes ``"100%"``.  A trailing ``\\r`` (the CR of
    a CRLF pair) is ignored.
    """
    line = line.rstrip("\r")
    if "\r" not in line:
        return line
    segments = [s for s in line.split("\r") if s]
    return segments[-1] if segments else ""


def clean_line(line: str) -> str:
    """Clean a single raw terminal line for storage and search."""
    return sanitize_binary_output(collapse_carriage_returns(strip_ansi(line))).rstrip("\r")


def clean_output(text: str) -> str:
    """Clean a multi-line block of raw terminal output."""
    lines = re.split(r"\r?\n", text)
    return "\n".join(clean_line(line) for line in lines).strip()

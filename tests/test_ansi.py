"""Tests for termsessions.pty.ansi."""

from __future__ import annotations

from termsessions.pty.ansi import (
    clean_line,
    clean_output,
    collapse_carriage_returns,
    sanitize_binary_output,
    strip_ansi,
)


# ---------------------------------------------------------------------------
# strip_ansi
# ---------------------------------------------------------------------------


class TestStripAnsi:
    def test_plain_text_unchanged(self) -> None:
        assert strip_ansi("hello world") == "hello world"

    def test_color_codes(self) -> None:
        assert strip_ansi("\x1b[1;32mOK\x1b[0m done") == "OK done"

    def test_private_mode(self) -> None:
        # Bracketed paste on/off, as emitted around every bash prompt
        assert strip_ansi("\x1b[?2004h$ \x1b[?2004l") == "$ "

    def test_osc_title_bel(self) -> None:
        assert strip_ansi("\x1b]0;user@host: ~\x07prompt") == "prompt"

    def test_osc_title_st(self) -> None:
        assert strip_ansi("\x1b]2;title\x1b\\text") == "text"

    def test_charset_selection(self) -> None:
        assert strip_ansi("\x1b(Bplain") == "plain"

    def test_cursor_movement(self) -> None:
        assert strip_ansi("\x1b[2K\x1b[1Gprogress") == "progress"


# ---------------------------------------------------------------------------
# sanitize_binary_output
# ---------------------------------------------------------------------------


class TestSanitizeBinaryOutput:
    def test_keeps_whitespace(self) -> None:
        assert sanitize_binary_output("a\tb\nc\r") == "a\tb\nc\r"

    def test_drops_control_chars(self) -> None:
        assert sanitize_binary_output("a\x00b\x07c\x7f") == "abc"

    def test_keeps_unicode(self) -> None:
        assert sanitize_binary_output("héllo ✓") == "héllo ✓"


# ---------------------------------------------------------------------------
# Carriage returns and full-line cleaning
# ---------------------------------------------------------------------------


class TestCarriageReturns:
    def test_crlf_terminator(self) -> None:
        assert collapse_carriage_returns("done\r") == "done"

    def test_progress_overwrite(self) -> None:
        assert collapse_carriage_returns("10%\r50%\r100%") == "100%"

    def test_no_cr(self) -> None:
        assert collapse_carriage_returns("plain") == "plain"


class TestCleanLine:
    def test_combined(self) -> None:
        raw = "\x1b[?2004h\x1b[32m10%\r\x1b[32m100%\x1b[0m\r"
        assert clean_line(raw) == "100%"

    def test_bell_removed(self) -> None:
        assert clean_line("ding\x07") == "ding"


class TestCleanOutput:
    def test_multiline(self) -> None:
        raw = "echo hi\r\n\x1b[1mhi\x1b[0m\r\n$ "
        assert clean_output(raw) == "echo hi\nhi\n$"

    def test_empty(self) -> None:
        assert clean_output("") == ""

    def test_only_escapes(self) -> None:
        assert clean_output("\x1b[?2004l\r\n\x1b[?2004h") == ""

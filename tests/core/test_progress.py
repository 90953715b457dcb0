"""Tests for core/progress.py module."""

from __future__ import annotations

import sys
from io import StringIO

import pytest

from cataloger.core.progress import (
    _PREFIXES,
    _is_tty,
    get_console,
    is_console_suppressed,
    progress,
    spinner,
    status,
    suppress_console_logs,
)


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> StringIO:
    """Route the shared console to a buffer."""
    buffer = StringIO()
    monkeypatch.setattr(get_console(), "_file", buffer)
    return buffer


class TestIsTty:
    """Tests for _is_tty function."""

    def test_false_for_stringio(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "stderr", StringIO())
        assert _is_tty() is False


class TestStatus:
    """Tests for status function."""

    @pytest.mark.parametrize("style", ["success", "error", "warning", "info"])
    def test_prints_message(self, captured: StringIO, style: str) -> None:
        status("Scan complete", style=style)

        assert "Scan complete" in captured.getvalue()

    def test_unknown_style_has_no_prefix(self, captured: StringIO) -> None:
        status("plain", style="bogus")

        assert captured.getvalue().rstrip("\n") == "plain"

    def test_indent(self, captured: StringIO) -> None:
        status("nested", style="none", indent=4)

        assert captured.getvalue().startswith("    nested")

    def test_styles_cover_levels(self) -> None:
        assert set(_PREFIXES) == {"success", "error", "warning", "info", "none"}


class TestProgress:
    """Tests for the progress generator."""

    def test_yields_every_item_without_tty(self) -> None:
        assert list(progress(range(250), desc="Extracting")) == list(range(250))

    def test_generator_without_total(self) -> None:
        items = (i for i in range(3))

        assert list(progress(items)) == [0, 1, 2]


class TestSuppression:
    """Console log suppression."""

    def test_active_only_inside_context(self) -> None:
        assert is_console_suppressed() is False
        with suppress_console_logs():
            assert is_console_suppressed() is True
        assert is_console_suppressed() is False

    def test_nested_contexts(self) -> None:
        with suppress_console_logs():
            with suppress_console_logs():
                pass
            assert is_console_suppressed() is True
        assert is_console_suppressed() is False

    def test_reset_after_error(self) -> None:
        with pytest.raises(RuntimeError), suppress_console_logs():
            raise RuntimeError("boom")

        assert is_console_suppressed() is False


class TestSpinner:
    """Tests for spinner context manager."""

    def test_plain_message_without_tty(self, captured: StringIO) -> None:
        with spinner("Scanning repo"):
            pass

        assert "Scanning repo..." in captured.getvalue()

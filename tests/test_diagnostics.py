"""
Tests for Diagnostic Collection

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import logging
import warnings

import pytest

from mdeval_core.diagnostics import (
    DiagnosticMessage,
    DiagnosticScope,
    collect_diagnostics,
    render_message,
    with_collection,
)
from mdeval_core.nodes import E


class TestRenderMessage:
    """Tests for message rendering."""

    def test_prefixes(self):
        assert render_message("error", "boom") == "% ERROR: boom"
        assert render_message("warning", "careful") == "% Warning: careful"

    def test_multiline_indent(self):
        assert render_message("error", "a\nb\n") == "% ERROR: a\n%   b"

    def test_to_node(self):
        msg = DiagnosticMessage("warning", "% Warning: x")
        assert msg.to_node() == E("pre", "% Warning: x", class_=["eval", "warning"])


class TestDiagnosticScope:
    """Tests for scoped capture."""

    def test_collects_in_emission_order(self):
        """Test warnings and log records interleave in order."""
        log = logging.getLogger("mdeval.test")
        with collect_diagnostics() as scope:
            warnings.warn("first")
            log.error("second")
            log.warning("third")
        assert [m.kind for m in scope.messages] == ["warning", "error", "warning"]
        assert scope.messages[0].text == "% Warning: UserWarning: first"
        assert scope.messages[1].text == "% ERROR: second"

    def test_duplicates_are_kept(self):
        with collect_diagnostics() as scope:
            warnings.warn("same")
            warnings.warn("same")
        assert len(scope.messages) == 2

    def test_info_is_ignored(self):
        log = logging.getLogger("mdeval.test")
        with collect_diagnostics() as scope:
            log.info("not a diagnostic")
        assert scope.messages == []

    def test_hooks_removed_after_exit(self):
        """Test nothing stays registered once the scope is closed."""
        root = logging.getLogger()
        before = list(root.handlers)
        showwarning = warnings.showwarning
        with collect_diagnostics() as scope:
            assert len(root.handlers) == len(before) + 1
        assert root.handlers == before
        assert warnings.showwarning is showwarning
        assert not scope.active

    def test_hooks_removed_on_exception(self):
        root = logging.getLogger()
        before = list(root.handlers)
        with pytest.raises(RuntimeError):
            with collect_diagnostics():
                raise RuntimeError("boom")
        assert root.handlers == before

    def test_nested_scopes_do_not_share_buffers(self):
        log = logging.getLogger("mdeval.test")
        outer = DiagnosticScope().open()
        with collect_diagnostics() as inner:
            log.warning("inner")
        log.warning("outer")
        outer.close()
        assert [m.text for m in inner.messages] == ["% Warning: inner"]
        assert "% Warning: outer" in [m.text for m in outer.messages]

    def test_open_twice_rejected(self):
        scope = DiagnosticScope().open()
        try:
            with pytest.raises(RuntimeError):
                scope.open()
        finally:
            scope.close()


class TestWithCollection:
    """Tests for the with_collection helper."""

    def test_returns_result_and_messages(self):
        def operation(x):
            warnings.warn("noted")
            return x * 2

        result, messages = with_collection(operation, 21)
        assert result == 42
        assert [m.kind for m in messages] == ["warning"]

    def test_exception_propagates(self):
        def operation():
            warnings.warn("lost")
            raise ValueError("bad")

        root = logging.getLogger()
        before = list(root.handlers)
        with pytest.raises(ValueError):
            with_collection(operation)
        assert root.handlers == before

"""
Diagnostics - Scoped capture of warnings and errors raised during evaluation

A DiagnosticScope intercepts Python warnings and log records (WARNING and
above) while it is open, renders them with a kind prefix and buffers them in
emission order. Closing the scope always removes the hooks and drains the
buffer. Scopes are registered per call; nothing stays installed afterwards.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Tuple

from .nodes import E, Element

logger = logging.getLogger(__name__)


KIND_PREFIX = {
    "error": "% ERROR: ",
    "warning": "% Warning: ",
}


def render_message(kind: str, text: str) -> str:
    """
    Render a diagnostic with its kind prefix.

    Continuation lines are indented under the prefix.
    """
    prefix = KIND_PREFIX[kind]
    lines = str(text).rstrip("\n").splitlines() or [""]
    rendered = [prefix + lines[0]]
    rendered.extend("%   " + line for line in lines[1:])
    return "\n".join(rendered)


@dataclass(frozen=True)
class DiagnosticMessage:
    """A rendered diagnostic (kind is 'error' or 'warning')."""
    kind: str
    text: str

    def to_node(self) -> Element:
        return E("pre", self.text, class_=["eval", self.kind])


class _ScopeHandler(logging.Handler):
    """Logging handler feeding a DiagnosticScope."""

    def __init__(self, scope: "DiagnosticScope"):
        super().__init__(logging.WARNING)
        self._scope = scope

    def emit(self, record: logging.LogRecord) -> None:
        kind = "error" if record.levelno >= logging.ERROR else "warning"
        self._scope.record(kind, record.getMessage())


class DiagnosticScope:
    """
    Registration object for one collection scope.

    Use as a context manager, or call open()/close() explicitly. After close(),
    the collected messages are available in `messages`.
    """

    def __init__(self, logger_name: Optional[str] = None):
        """
        Args:
            logger_name: Logger to hook (root logger when None)
        """
        self.logger_name = logger_name
        self.messages: List[DiagnosticMessage] = []
        self._buffer: List[DiagnosticMessage] = []
        self._handler: Optional[_ScopeHandler] = None
        self._catcher: Optional[warnings.catch_warnings] = None

    @property
    def active(self) -> bool:
        return self._handler is not None

    def record(self, kind: str, text: str) -> None:
        """Append a rendered message to the scope buffer."""
        self._buffer.append(DiagnosticMessage(kind, render_message(kind, text)))

    def _showwarning(self, message, category, filename, lineno, file=None, line=None) -> None:
        self.record("warning", f"{category.__name__}: {message}")

    def open(self) -> "DiagnosticScope":
        if self.active:
            raise RuntimeError("Diagnostic scope is already open")
        self._buffer = []
        self.messages = []

        self._catcher = warnings.catch_warnings()
        self._catcher.__enter__()
        warnings.simplefilter("always")
        warnings.showwarning = self._showwarning

        self._handler = _ScopeHandler(self)
        logging.getLogger(self.logger_name).addHandler(self._handler)
        return self

    def close(self) -> List[DiagnosticMessage]:
        """Deregister hooks and drain the buffer."""
        if self._handler is not None:
            logging.getLogger(self.logger_name).removeHandler(self._handler)
            self._handler = None
        if self._catcher is not None:
            self._catcher.__exit__(None, None, None)
            self._catcher = None

        self.messages, self._buffer = self._buffer, []
        return self.messages

    def __enter__(self) -> "DiagnosticScope":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@contextmanager
def collect_diagnostics(logger_name: Optional[str] = None) -> Iterator[DiagnosticScope]:
    """
    Collect diagnostics for the duration of a block.

    Example:
        >>> with collect_diagnostics() as scope:
        ...     warnings.warn("careful")
        >>> scope.messages[0].text
        '% Warning: UserWarning: careful'
    """
    scope = DiagnosticScope(logger_name).open()
    try:
        yield scope
    finally:
        scope.close()


def with_collection(operation: Callable[..., Any], *args, **kwargs) -> Tuple[Any, List[DiagnosticMessage]]:
    """
    Run an operation and return (result, messages).

    If the operation raises, the hooks are still removed and the buffered
    messages are discarded; the exception propagates.
    """
    scope = DiagnosticScope().open()
    try:
        result = operation(*args, **kwargs)
    finally:
        messages = scope.close()
    return result, messages

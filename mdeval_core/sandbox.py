"""
Isolated Execution Context - Run fragments in a disposable worker process

Each ExecutionContext owns one worker process holding a single namespace:
stripped builtins, an import allowlist and the exports of one capability
module. Fragments of a traversal run one after the other in that namespace,
so later fragments see the definitions of earlier ones.

The host waits on the result pipe with the fragment time limit; on expiry the
worker is killed and the next fragment starts a fresh one (empty namespace).

Protocol (host <-> worker, over a multiprocessing Pipe):
    worker -> ("ready",) | ("failed", text)       once, after setup
    host   -> (identity, code) | None             None asks the worker to exit
    worker -> ("ok", output, messages) | ("error", kind, text)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import builtins
import importlib
import io
import linecache
import logging
import multiprocessing
import uuid
from contextlib import redirect_stdout
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from .classifier import classify
from .config import SandboxConfig
from .diagnostics import DiagnosticMessage, DiagnosticScope, render_message
from .errors import EvalTimeout, ExecutionError, MdEvalError, ResourceExceeded
from .nodes import E, Element, Node
from .safety import BuildContext

logger = logging.getLogger(__name__)


STARTUP_TIMEOUT = 30.0  # seconds, worker setup is not charged to fragments
SHUTDOWN_TIMEOUT = 2.0

SAFE_BUILTINS: Tuple[str, ...] = (
    # functions
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "complex", "dict", "divmod", "enumerate", "filter", "float", "format",
    "frozenset", "hash", "hex", "int", "isinstance", "issubclass", "iter", "len",
    "list", "map", "max", "min", "next", "object", "oct", "ord", "pow", "print",
    "range", "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum",
    "tuple", "type", "zip",
    # class definitions
    "__build_class__", "classmethod", "property", "staticmethod", "super",
    # exceptions
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "ImportError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "OverflowError", "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError", "Warning", "UserWarning", "DeprecationWarning", "RuntimeWarning",
    # constants
    "NotImplemented", "Ellipsis",
)


# =============================================================================
# Evaluation options and outcomes
# =============================================================================

@dataclass(frozen=True)
class EvalOptions:
    """Options passed unchanged through a traversal."""
    time_limit: float = 10.0  # seconds

    def __post_init__(self):
        if not self.time_limit > 0:
            raise ValueError(f"time_limit must be > 0, got {self.time_limit!r}")


@dataclass(frozen=True)
class Success:
    """Fragment completed: output nodes plus diagnostics in emission order."""
    nodes: Tuple[Node, ...] = ()
    messages: Tuple[DiagnosticMessage, ...] = ()

    def to_nodes(self) -> List[Node]:
        output = Element("div", (("class", "output"),), tuple(self.nodes))
        return [output] + [message.to_node() for message in self.messages]


@dataclass(frozen=True)
class Failure:
    """Fragment failed: a single error node, no output and no messages."""
    node: Element
    kind: str = "error"  # error | timeout | resource

    @classmethod
    def from_error(cls, exc: MdEvalError) -> "Failure":
        if isinstance(exc, EvalTimeout):
            kind = "timeout"
        elif isinstance(exc, ResourceExceeded):
            kind = "resource"
        else:
            kind = "error"
        return cls(E("div", render_message("error", str(exc)), class_="error"), kind)

    @property
    def text(self) -> str:
        return "".join(child.value for child in self.node.children)

    def to_nodes(self) -> List[Node]:
        return [self.node]


Outcome = Union[Success, Failure]


# =============================================================================
# Capabilities
# =============================================================================

@dataclass(frozen=True)
class CapabilitySet:
    """
    Immutable grant attached to a context at creation.

    Attributes:
        module: Capability module whose exports() fill the namespace
        allowed_imports: Top-level modules fragments may import
        builtin_names: Builtins kept in the namespace
    """
    module: str = "mdeval_core.capability"
    allowed_imports: FrozenSet[str] = field(default_factory=frozenset)
    builtin_names: Tuple[str, ...] = SAFE_BUILTINS

    @classmethod
    def from_config(cls, config: SandboxConfig) -> "CapabilitySet":
        return cls(
            module=config.capability_module,
            allowed_imports=frozenset(config.allowed_imports),
        )

    def _guarded_import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0:
            raise ImportError("Relative imports are not allowed")
        if name not in self.allowed_imports and name.split(".")[0] not in self.allowed_imports:
            raise ImportError(f"Import of '{name}' is not allowed")
        return importlib.__import__(name, globals, locals, fromlist, level)

    def build_builtins(self) -> Dict[str, Any]:
        table = {name: getattr(builtins, name) for name in self.builtin_names if hasattr(builtins, name)}
        table["__import__"] = self._guarded_import
        return table

    def install(self, namespace: Dict[str, Any], context: BuildContext) -> None:
        """Replace the namespace builtins and add the capability exports."""
        namespace["__builtins__"] = self.build_builtins()
        capability = importlib.import_module(self.module)
        namespace.update(capability.exports(context))


def apply_quota(program_space_mb: int) -> None:
    """Limit the address space of the current process (no-op when <= 0)."""
    if program_space_mb <= 0:
        return
    try:
        import resource
    except ImportError:
        logger.warning("Program space quota is not supported on this platform")
        return

    limit = program_space_mb * 1024 * 1024
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit = min(limit, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as e:
        logger.warning(f"Could not apply program space quota: {e}")


# =============================================================================
# Worker side
# =============================================================================

def _error_text(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        return f"SyntaxError: {exc.msg} (line {exc.lineno})"
    return f"{type(exc).__name__}: {exc}"


def _run_fragment(namespace: Dict[str, Any], identity: str, code: str, program_space_mb: int) -> Tuple:
    # Source lookup by identity lets the safety checker read fragment functions.
    linecache.cache[identity] = (len(code), None, code.splitlines(True), identity)

    output = io.StringIO()
    scope = DiagnosticScope()
    scope.open()
    try:
        with redirect_stdout(output):
            exec(compile(code, identity, "exec"), namespace)
    except MemoryError:
        scope.close()
        return ("error", "resource", f"Program space quota exceeded ({program_space_mb} MB)")
    except (Exception, SystemExit) as e:
        scope.close()
        return ("error", "error", _error_text(e))
    messages = scope.close()
    return ("ok", output.getvalue(), messages)


def _worker_main(conn, name: str, capabilities: CapabilitySet, program_space_mb: int) -> None:
    """Worker process entry point."""
    try:
        namespace: Dict[str, Any] = {"__name__": name}
        capabilities.install(namespace, BuildContext(name))
        apply_quota(program_space_mb)
    except Exception as e:
        conn.send(("failed", _error_text(e)))
        return
    conn.send(("ready",))

    while True:
        try:
            request = conn.recv()
        except EOFError:
            break
        if request is None:
            break
        identity, code = request
        conn.send(_run_fragment(namespace, identity, code, program_space_mb))


# =============================================================================
# Host side
# =============================================================================

class ExecutionContext:
    """
    Disposable isolated namespace backed by a worker process.

    Usage:
        with ExecutionContext() as ctx:
            outcome = ctx.evaluate(0, "print('<b>ok</b>')", EvalOptions(time_limit=1))
    """

    def __init__(self, config: Optional[SandboxConfig] = None, name: Optional[str] = None):
        self.config = config or SandboxConfig()
        self.name = name or f"eval_{uuid.uuid4().hex[:8]}"
        self.capabilities = CapabilitySet.from_config(self.config)
        self._mp = multiprocessing.get_context(self.config.start_method)
        self._process = None
        self._conn = None
        self._starts = 0

    def identity(self, index: int) -> str:
        """Identity of the fragment at `index`, used as its source filename."""
        return f"eval://{self.name}-{index}"

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _start(self) -> None:
        if self._starts:
            logger.warning(f"Restarting execution context {self.name}; earlier definitions are lost")
        self._starts += 1

        parent_conn, child_conn = self._mp.Pipe()
        process = self._mp.Process(
            target=_worker_main,
            args=(child_conn, self.name, self.capabilities, self.config.program_space_mb),
            daemon=True,
        )
        process.start()
        child_conn.close()
        self._process, self._conn = process, parent_conn

        try:
            ready = parent_conn.recv() if parent_conn.poll(STARTUP_TIMEOUT) else None
        except EOFError:
            ready = None
        if ready is None or ready[0] != "ready":
            self._discard()
            reason = ready[1] if ready else "no response"
            raise ExecutionError(f"Execution context failed to start: {reason}")
        logger.debug(f"Execution context {self.name} started (pid {process.pid})")

    def _discard(self) -> None:
        """Kill the worker and forget it."""
        if self._process is not None:
            if self._process.is_alive():
                self._process.kill()
            self._process.join()
        if self._conn is not None:
            self._conn.close()
        self._process = None
        self._conn = None

    def _run(self, identity: str, code: str, time_limit: float) -> Tuple[str, List[DiagnosticMessage]]:
        if not self.alive:
            self._discard()
            self._start()

        try:
            self._conn.send((identity, code))
        except OSError as e:
            exitcode = self._process.exitcode if self._process else None
            self._discard()
            raise ResourceExceeded(f"Execution context terminated abnormally (exit code {exitcode})") from e
        if not self._conn.poll(time_limit):
            self._discard()
            raise EvalTimeout(f"Time limit exceeded ({time_limit:g}s)")
        try:
            reply = self._conn.recv()
        except EOFError:
            exitcode = self._process.exitcode if self._process else None
            self._discard()
            raise ResourceExceeded(f"Execution context terminated abnormally (exit code {exitcode})")

        if reply[0] == "ok":
            return reply[1], list(reply[2])
        if reply[1] == "resource":
            raise ResourceExceeded(reply[2])
        raise ExecutionError(reply[2])

    def evaluate(self, index: int, code: str, options: EvalOptions) -> Outcome:
        """
        Run one fragment to completion or deadline.

        Returns:
            Success with classified output nodes and messages, or Failure
        """
        identity = self.identity(index)
        logger.debug(f"Evaluating {identity}")
        try:
            output, messages = self._run(identity, code, options.time_limit)
        except MdEvalError as e:
            logger.debug(f"{identity} failed: {e}")
            return Failure.from_error(e)
        return Success(tuple(classify(output)), tuple(messages))

    def close(self) -> None:
        """Stop the worker; safe to call more than once."""
        if self._process is None:
            return
        if self._process.is_alive():
            try:
                self._conn.send(None)
            except (OSError, ValueError) as e:
                logger.debug(f"Worker of {self.name} unreachable at close: {e}")
            else:
                self._process.join(SHUTDOWN_TIMEOUT)
        self._discard()
        logger.debug(f"Execution context {self.name} closed")

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

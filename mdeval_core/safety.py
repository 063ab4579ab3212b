"""
Safe Builder - Declarative tree building with statically verified escapes

A build spec is a nested structure of Element, Text, str, numbers, lists and
two markers:

- Escape(fn, *args): a computed sub-tree. The builder calls
  fn(*args, out, context), where `out` is the node list being built and
  `context` the BuildContext. This calling convention is the EmitFn adapter.
- Slot(name): an unfilled value. Specs holding slots are not ground.

build_safe() proves every Escape against a SafetyPolicy before building
anything. The policy walks the escape function's source and accepts it only
when every call resolves to a registered safe primitive, a whitelisted method,
or another function of the declaring module that passes the same check, and
every global it reads is a constant, a checked callable or a module member.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import ast
import builtins
import functools
import inspect
import logging
import textwrap
import types
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from .errors import NotGround, UnsafeSpec
from .nodes import E, Element, Node, Text, text_content

logger = logging.getLogger(__name__)


EmitFn = Callable[..., None]


# =============================================================================
# Spec markers
# =============================================================================

@dataclass(frozen=True)
class Slot:
    """Placeholder for a value that has not been provided yet."""
    name: str


@dataclass(frozen=True)
class BuildContext:
    """Declaring context of a build; `module` is the privilege scope."""
    module: str

    @classmethod
    def of(cls, scope: Any) -> "BuildContext":
        """Build from a module object, a module name or an existing context."""
        if isinstance(scope, BuildContext):
            return scope
        if isinstance(scope, types.ModuleType):
            return cls(scope.__name__)
        return cls(str(scope))


class Escape:
    """Marker wrapping a callable that emits nodes during the build."""

    __slots__ = ("fn", "args")

    def __init__(self, fn: EmitFn, *args: Any):
        self.fn = fn
        self.args = args

    def __call__(self, out: List[Any], context: BuildContext) -> None:
        self.fn(*self.args, out, context)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Escape) and self.fn is other.fn and self.args == other.args

    def __hash__(self) -> int:
        return hash((id(self.fn), self.args))

    def __repr__(self) -> str:
        name = getattr(self.fn, "__qualname__", repr(self.fn))
        return f"Escape({name}{''.join(', ' + repr(a) for a in self.args)})"


def _children_of(item: Any) -> Iterable[Any]:
    if isinstance(item, Element):
        yield from (value for _, value in item.attrs)
        yield from item.children
    elif isinstance(item, (list, tuple)):
        yield from item
    elif isinstance(item, dict):
        yield from item.values()
    elif isinstance(item, Escape):
        yield from item.args


def iter_escapes(spec: Any) -> Iterator[Escape]:
    """All escape markers in a spec, at any depth, in document order."""
    stack = [spec]
    while stack:
        item = stack.pop()
        if isinstance(item, Escape):
            yield item
        stack.extend(reversed(list(_children_of(item))))


def is_ground(spec: Any) -> bool:
    """True when the spec holds no Slot."""
    stack = [spec]
    while stack:
        item = stack.pop()
        if isinstance(item, Slot):
            return False
        stack.extend(_children_of(item))
    return True


def fill(spec: Any, **values: Any) -> Any:
    """Replace slots by name; slots without a value are kept."""
    if isinstance(spec, Slot):
        return values.get(spec.name, spec)
    if isinstance(spec, Element):
        attrs = tuple((key, fill(value, **values)) for key, value in spec.attrs)
        return Element(spec.tag, attrs, tuple(fill(child, **values) for child in spec.children))
    if isinstance(spec, list):
        return [fill(item, **values) for item in spec]
    if isinstance(spec, tuple):
        return tuple(fill(item, **values) for item in spec)
    if isinstance(spec, dict):
        return {key: fill(value, **values) for key, value in spec.items()}
    if isinstance(spec, Escape):
        return Escape(spec.fn, *(fill(arg, **values) for arg in spec.args))
    return spec


# =============================================================================
# Safety policy
# =============================================================================

SAFE_BUILTIN_PRIMITIVES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter",
    "float", "int", "isinstance", "len", "list", "map", "max", "min", "range",
    "repr", "reversed", "round", "set", "sorted", "str", "sum", "tuple", "zip",
)

SAFE_METHODS = frozenset({
    # list
    "append", "extend", "insert", "index", "count",
    # str
    "join", "upper", "lower", "title", "capitalize", "strip", "lstrip", "rstrip",
    "split", "splitlines", "replace", "startswith", "endswith", "zfill", "center",
    "ljust", "rjust",
    # dict
    "items", "keys", "values", "get",
})

_FORBIDDEN_NODES = (ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal, ast.Await,
                    ast.AsyncFunctionDef, ast.AsyncFor, ast.AsyncWith)

_DATA_TYPES = (str, int, float, bool, type(None), Text)


class SafetyPolicy:
    """
    Whitelist oracle for escape callables.

    Primitives are registered by identity, so a function cannot pass by
    renaming itself.
    """

    def __init__(self, primitives: Iterable[Callable] = (), methods: Iterable[str] = SAFE_METHODS):
        self._primitives: Dict[int, Callable] = {}
        self.methods = frozenset(methods)
        for fn in primitives:
            self.register(fn)

    def register(self, fn: Callable) -> None:
        """Declare a callable safe to invoke from an escape."""
        self._primitives[id(fn)] = fn

    def is_primitive(self, obj: Any) -> bool:
        return self._primitives.get(id(obj)) is obj

    def is_allowed(self, escape: Escape, context: BuildContext) -> bool:
        """Policy verdict for one escape marker."""
        try:
            self.check(escape, context)
        except UnsafeSpec as e:
            logger.debug(f"Rejected {escape!r}: {e}")
            return False
        return True

    def check(self, escape: Escape, context: BuildContext) -> None:
        """
        Verify one escape marker.

        Raises:
            UnsafeSpec: with the reason of the rejection
        """
        fn = escape.fn
        if not callable(fn):
            raise UnsafeSpec(f"Escape target is not callable: {fn!r}")

        for arg in escape.args:
            self._check_data(arg)

        try:
            inspect.signature(fn).bind(*escape.args, [], context)
        except TypeError as e:
            raise UnsafeSpec(f"{_name(fn)} does not accept (*args, out, context): {e}") from e
        except ValueError:
            # No introspectable signature (C callables): only primitives pass below.
            pass

        self._check_callable(fn, context, set())

    def _check_data(self, value: Any) -> None:
        if isinstance(value, _DATA_TYPES):
            return
        if isinstance(value, Element):
            for _, attr in value.attrs:
                self._check_data(attr)
            for child in value.children:
                self._check_data(child)
            return
        if isinstance(value, (list, tuple)):
            for item in value:
                self._check_data(item)
            return
        if isinstance(value, dict):
            for key, item in value.items():
                self._check_data(key)
                self._check_data(item)
            return
        raise UnsafeSpec(f"Escape argument is not plain data: {type(value).__name__}")

    def _check_callable(self, fn: Any, context: BuildContext, seen: Set[int]) -> None:
        if self.is_primitive(fn):
            return
        if isinstance(fn, functools.partial):
            self._check_callable(fn.func, context, seen)
            return
        if not isinstance(fn, types.FunctionType):
            raise UnsafeSpec(f"{_name(fn)} is not a safe primitive")
        if hasattr(fn, "__wrapped__"):
            raise UnsafeSpec(f"{_name(fn)} wraps another callable")
        if fn.__globals__.get("__name__") != context.module:
            raise UnsafeSpec(f"{_name(fn)} is outside the privilege scope of {context.module}")
        if id(fn) in seen:
            return
        seen.add(id(fn))

        tree = _function_ast(fn)
        _ScopeChecker(self, fn, context, seen).check(tree)


def _name(fn: Any) -> str:
    module = getattr(fn, "__module__", None) or "?"
    return f"{module}.{getattr(fn, '__qualname__', type(fn).__name__)}"


def _is_constant(value: Any) -> bool:
    """Immutable plain data a checked function may read from its globals."""
    if isinstance(value, (str, bytes, int, float, complex, bool, type(None), Text, Element)):
        return True
    if isinstance(value, (tuple, frozenset)):
        return all(_is_constant(item) for item in value)
    return False


def _function_ast(fn: types.FunctionType) -> ast.AST:
    """Parse the source of the code object a function actually runs."""
    code = fn.__code__
    try:
        source = textwrap.dedent(inspect.getsource(code))
    except (OSError, TypeError) as e:
        raise UnsafeSpec(f"No source available for {_name(fn)}") from e

    try:
        module = ast.parse(source)
    except SyntaxError as e:
        raise UnsafeSpec(f"Cannot analyse source of {_name(fn)}") from e

    if code.co_name != "<lambda>":
        for node in module.body:
            if isinstance(node, ast.FunctionDef) and node.name == code.co_name:
                # Decorators ran at definition time; the code object is what gets called.
                node.decorator_list = []
                return node
        raise UnsafeSpec(f"Cannot locate definition of {_name(fn)}")

    # All lambdas on the defining line are checked together.
    lambdas = [node for node in ast.walk(module) if isinstance(node, ast.Lambda)]
    if not lambdas:
        raise UnsafeSpec(f"Cannot locate definition of {_name(fn)}")
    return ast.Module(body=[ast.Expr(value=node) for node in lambdas], type_ignores=[])


class _ScopeChecker:
    """
    Walks one function body and resolves every global it touches.

    Globals must be constants, checked callables, or modules used directly as
    `module.name(...)` or `module.CONSTANT`. Method calls by name are only
    trusted on values that did not come from a global.
    """

    def __init__(self, policy: SafetyPolicy, fn: types.FunctionType, context: BuildContext, seen: Set[int]):
        self.policy = policy
        self.fn = fn
        self.context = context
        self.seen = seen

    def check(self, tree: ast.AST) -> None:
        nested = {node.name for node in ast.walk(tree)
                  if isinstance(node, ast.FunctionDef) and node is not tree}
        local = {node.arg for node in ast.walk(tree) if isinstance(node, ast.arg)}
        local |= {node.id for node in ast.walk(tree)
                  if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del))}
        local |= {node.name for node in ast.walk(tree)
                  if isinstance(node, ast.ExceptHandler) and node.name}
        bound = local | nested

        # Name nodes used as the base of `module.attr`, mapped to that attribute node.
        attribute_of = {id(node.value): node for node in ast.walk(tree)
                        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name)}
        called = {id(node.func) for node in ast.walk(tree) if isinstance(node, ast.Call)}

        for node in ast.walk(tree):
            if isinstance(node, _FORBIDDEN_NODES):
                raise UnsafeSpec(f"{type(node).__name__} not allowed in {_name(self.fn)}")
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise UnsafeSpec(f"Private attribute .{node.attr} in {_name(self.fn)}")
            if isinstance(node, ast.Name):
                if node.id.startswith("__"):
                    raise UnsafeSpec(f"Reserved name {node.id} in {_name(self.fn)}")
                if isinstance(node.ctx, ast.Load) and node.id not in bound:
                    self._check_global(node, attribute_of.get(id(node)), called)
            if isinstance(node, ast.Call):
                self._check_call(node, nested, bound)

    def _check_global(self, node: ast.Name, attribute: Optional[ast.Attribute], called: Set[int]) -> None:
        value = self._resolve(node.id)
        if isinstance(value, types.ModuleType):
            if attribute is None:
                raise UnsafeSpec(f"Module {node.id} used as a value in {_name(self.fn)}")
            if id(attribute) in called:
                return  # checked with the call
            if not hasattr(value, attribute.attr) or not _is_constant(getattr(value, attribute.attr)):
                raise UnsafeSpec(f"{node.id}.{attribute.attr} is not a constant in {_name(self.fn)}")
            return
        if _is_constant(value):
            return
        if callable(value):
            self.policy._check_callable(value, self.context, self.seen)
            return
        raise UnsafeSpec(f"Global {node.id} is mutable state in {_name(self.fn)}")

    def _check_call(self, call: ast.Call, nested: Set[str], bound: Set[str]) -> None:
        func = call.func
        if isinstance(func, ast.Name):
            if func.id in nested:
                return
            if func.id in bound:
                raise UnsafeSpec(f"Call of unverified local {func.id}() in {_name(self.fn)}")
            self.policy._check_callable(self._resolve(func.id), self.context, self.seen)
            return

        if isinstance(func, ast.Attribute):
            if isinstance(func.value, ast.Name) and func.value.id not in bound:
                owner = self._resolve(func.value.id)
                if isinstance(owner, types.ModuleType):
                    target = getattr(owner, func.attr, None)
                    if target is None:
                        raise UnsafeSpec(f"{func.value.id}.{func.attr} does not exist")
                    self.policy._check_callable(target, self.context, self.seen)
                    return
            # Receivers are locals, literals or call results; globals were vetted as constants.
            if func.attr in self.policy.methods:
                return
            raise UnsafeSpec(f"Method .{func.attr}() not allowed in {_name(self.fn)}")

        raise UnsafeSpec(f"Dynamic call not allowed in {_name(self.fn)}")

    def _resolve(self, name: str) -> Any:
        code = self.fn.__code__
        if name in code.co_freevars and self.fn.__closure__:
            cell = self.fn.__closure__[code.co_freevars.index(name)]
            return cell.cell_contents
        if name in self.fn.__globals__:
            return self.fn.__globals__[name]
        scope = self.fn.__globals__.get("__builtins__", builtins)
        table = scope if isinstance(scope, dict) else vars(scope)
        if name in table:
            return table[name]
        raise UnsafeSpec(f"Unresolved name {name} in {_name(self.fn)}")


@functools.lru_cache(maxsize=1)
def default_policy() -> SafetyPolicy:
    """Policy with the builtin primitives and the node constructors."""
    from . import capability

    primitives: List[Callable] = [getattr(builtins, name) for name in SAFE_BUILTIN_PRIMITIVES]
    primitives.extend([E, Element, Text, Escape, capability.safe_html])
    return SafetyPolicy(primitives)


# =============================================================================
# Building
# =============================================================================

def _coerce(item: Any) -> Node:
    if isinstance(item, (Text, Element)):
        return item
    if isinstance(item, str):
        return Text(item)
    if isinstance(item, (int, float)) and not isinstance(item, bool):
        return Text(str(item))
    raise TypeError(f"Escape emitted a non-node value: {item!r}")


def _emit(item: Any, out: List[Any], context: BuildContext) -> None:
    if isinstance(item, Escape):
        mark = len(out)
        item(out, context)
        out[mark:] = [_coerce(x) for x in out[mark:]]
    elif isinstance(item, Element):
        children: List[Any] = []
        for child in item.children:
            _emit(child, children, context)
        attrs = tuple((key, _attr_text(value, context)) for key, value in item.attrs)
        out.append(Element(item.tag, attrs, tuple(children)))
    elif isinstance(item, (list, tuple)):
        for child in item:
            _emit(child, out, context)
    elif isinstance(item, Slot):
        raise NotGround(f"Unfilled slot: {item.name}")
    elif item is None:
        return
    elif isinstance(item, dict):
        raise TypeError(f"A dict is not a node: {item!r}")
    else:
        out.append(_coerce(item))


def _attr_text(value: Any, context: BuildContext) -> str:
    """Attribute values are strings; an escape contributes the text it emits."""
    if isinstance(value, Slot):
        raise NotGround(f"Unfilled slot: {value.name}")
    if isinstance(value, Escape):
        emitted: List[Any] = []
        _emit(value, emitted, context)
        return text_content(emitted)
    return str(value)


def build_tree(spec: Any, context: BuildContext) -> Element:
    """Build a div around the spec without any safety check."""
    out: List[Any] = []
    _emit(spec, out, context)
    return Element("div", (), tuple(out))


def build_safe(spec: Any, declaring_context: Any, policy: Optional[SafetyPolicy] = None) -> Element:
    """
    Build a spec after proving every escape marker safe.

    Args:
        spec: Declarative build request
        declaring_context: BuildContext, module or module name (privilege scope)
        policy: Safety policy (default_policy() when None)

    Returns:
        The built tree, a div element around the spec

    Raises:
        NotGround: the spec still holds slots
        UnsafeSpec: an escape marker failed the policy
    """
    context = BuildContext.of(declaring_context)
    if not is_ground(spec):
        raise NotGround("Build spec is not fully instantiated")

    policy = policy or default_policy()
    for escape in iter_escapes(spec):
        try:
            policy.check(escape, context)
        except UnsafeSpec as e:
            raise UnsafeSpec(f"Unsafe escape {escape!r}: {e}") from e

    return build_tree(spec, context)

"""
Tests for the Safety Checker and Safe Builder

Escape functions are defined at module level: the checker reads their
source and scopes them to this module.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import functools
import os
import sys

import pytest

from mdeval_core import capability
from mdeval_core.errors import NotGround, UnsafeSpec
from mdeval_core.nodes import E, Text
from mdeval_core.safety import (
    BuildContext,
    Escape,
    SafetyPolicy,
    Slot,
    build_safe,
    build_tree,
    default_policy,
    fill,
    is_ground,
    iter_escapes,
)

HERE = BuildContext(__name__)
CALLS = []
LIMITS = (1, 2, 3)


def label(n):
    return "item " + str(n)


def emit_square(n, out, context):
    out.append(E("li", str(n * n)))


def emit_labelled(n, out, context):
    out.append(E("li", label(n)))


def emit_numbers(out, context):
    for i in range(3):
        out.append(i)


def record_call(calls, n, out, context):
    calls.append(n)


def emit_file(out, context):
    out.append(open("/etc/hostname").read())


def emit_env(out, context):
    out.append(os.getcwd())


def emit_import(out, context):
    import subprocess
    out.append(str(subprocess))


def emit_dunder(out, context):
    out.append(str(out.__class__))


def emit_move(out, context):
    os.replace("a", "b")


def emit_path(out, context):
    sys.path.insert(0, "/tmp")


def emit_global_list(out, context):
    CALLS.append(1)


def emit_module_alias(out, context):
    alias = os
    out.append(alias.getcwd())


def emit_constant(out, context):
    out.append(str(LIMITS[0] + len(os.sep)))


def emit_link(out, context):
    out.append("#top")


def emit_entry(pair, out, context):
    out.append(E("li", pair["name"]))


def shout(fn):
    def wrapper(out, context):
        fn(out, context)
        out.append("!")
    return wrapper


@shout
def emit_shouted(out, context):
    out.append("hi")


@shout
def emit_shouted_file(out, context):
    out.append(open("/etc/hostname").read())


@functools.wraps(emit_link)
def emit_disguised(out, context):
    out.append(open("/etc/hostname").read())


def emit_nested(out, context):
    def inner(x):
        return x.upper()
    out.append(inner("a"))


def emit_non_node(out, context):
    out.append([1, 2])


def no_convention():
    return None


class TestSpecHelpers:
    """Tests for escape discovery and ground checks."""

    def test_iter_escapes_any_depth(self):
        deep = Escape(emit_square, 2)
        spec = E("div", E("p", [E("span", deep)]), Escape(emit_numbers))
        assert list(iter_escapes(spec)) == [deep, Escape(emit_numbers)]

    def test_no_escapes(self):
        assert list(iter_escapes(E("p", "x"))) == []

    def test_is_ground(self):
        assert is_ground(E("p", "x"))
        assert not is_ground(E("p", Slot("name")))
        assert not is_ground(E("a", "x", href=Slot("url")))

    def test_fill(self):
        spec = E("p", "Hello ", Slot("name"))
        assert build_tree(fill(spec, name="Ada"), HERE) == E("div", E("p", "Hello ", "Ada"))
        assert not is_ground(fill(spec, other="x"))

    def test_fill_descends_into_dicts(self):
        """Test slots inside dict arguments are filled like any other container."""
        spec = E("ul", Escape(emit_entry, {"name": Slot("who")}))
        assert not is_ground(spec)
        filled = fill(spec, who="Ada")
        assert is_ground(filled)
        assert build_safe(filled, HERE) == E("div", E("ul", E("li", "Ada")))


class TestSafetyPolicy:
    """Tests for the policy oracle."""

    def test_allowed_escape(self):
        assert default_policy().is_allowed(Escape(emit_square, 3), HERE)

    def test_helper_of_same_module_is_checked(self):
        assert default_policy().is_allowed(Escape(emit_labelled, 1), HERE)

    def test_nested_function(self):
        assert default_policy().is_allowed(Escape(emit_nested), HERE)

    def test_lambda(self):
        fn = lambda out, context: out.append(str(len("abc")))
        assert default_policy().is_allowed(Escape(fn), HERE)

    @pytest.mark.parametrize("fn", [
        emit_file, emit_env, emit_import, emit_dunder,
        emit_move, emit_path, emit_global_list, emit_module_alias,
    ])
    def test_rejected_bodies(self, fn):
        assert not default_policy().is_allowed(Escape(fn), HERE)

    def test_module_call_is_resolved_before_method_names(self):
        """Test `module.replace(...)` is judged by the function it names, not by the method list."""
        assert "replace" in default_policy().methods
        with pytest.raises(UnsafeSpec, match="replace"):
            default_policy().check(Escape(emit_move), HERE)

    def test_mutable_global_rejected(self):
        with pytest.raises(UnsafeSpec, match="mutable state"):
            default_policy().check(Escape(emit_global_list), HERE)

    def test_module_attribute_must_be_constant(self):
        with pytest.raises(UnsafeSpec, match="sys.path is not a constant"):
            default_policy().check(Escape(emit_path), HERE)

    def test_constants_are_readable(self):
        assert default_policy().is_allowed(Escape(emit_constant), HERE)
        assert build_safe(E("p", Escape(emit_constant)), HERE) == E("div", E("p", "2"))

    def test_wrapped_function_rejected(self):
        """Test a function carrying __wrapped__ is not judged by the source of the wrapped one."""
        assert emit_disguised.__name__ == "emit_link"
        with pytest.raises(UnsafeSpec, match="wraps another callable"):
            default_policy().check(Escape(emit_disguised), HERE)

    def test_decorated_function_checked_by_its_code(self):
        """Test a plain decorator's wrapper is read, and the closure target checked with it."""
        assert default_policy().is_allowed(Escape(emit_shouted), HERE)
        assert build_safe(E("p", Escape(emit_shouted)), HERE) == E("div", E("p", "hi", "!"))
        assert not default_policy().is_allowed(Escape(emit_shouted_file), HERE)

    def test_outside_privilege_scope(self):
        assert not default_policy().is_allowed(Escape(emit_square, 3), BuildContext("elsewhere"))

    def test_calling_convention_is_checked(self):
        with pytest.raises(UnsafeSpec, match="does not accept"):
            default_policy().check(Escape(no_convention), HERE)

    def test_arguments_must_be_data(self):
        with pytest.raises(UnsafeSpec, match="plain data"):
            default_policy().check(Escape(emit_square, object()), HERE)

    def test_primitive_escape(self):
        """Test a registered primitive passes without source."""
        policy = SafetyPolicy([print])
        assert policy.is_allowed(Escape(print), HERE)
        assert not SafetyPolicy().is_allowed(Escape(print), HERE)

    def test_empty_policy_rejects_constructors(self):
        assert not SafetyPolicy().is_allowed(Escape(emit_square, 3), HERE)

    def test_registration_by_identity(self):
        policy = SafetyPolicy()
        policy.register(E)
        policy.register(str)
        assert policy.is_allowed(Escape(emit_square, 3), HERE)


class TestBuildSafe:
    """Tests for checked building."""

    def test_zero_escapes_always_pass(self):
        tree = build_safe(E("p", "plain"), HERE, policy=SafetyPolicy())
        assert tree == E("div", E("p", "plain"))

    def test_escape_output_is_spliced(self):
        tree = build_safe(E("ul", Escape(emit_square, 3), Escape(emit_square, 4)), HERE)
        assert tree == E("div", E("ul", E("li", "9"), E("li", "16")))

    def test_numbers_become_text(self):
        tree = build_safe(E("p", Escape(emit_numbers)), __name__)
        assert tree.children[0].children == (Text("0"), Text("1"), Text("2"))

    def test_rejects_at_any_depth(self):
        spec = E("div", E("p", [E("span", Escape(emit_file))]))
        with pytest.raises(UnsafeSpec, match="emit_file"):
            build_safe(spec, HERE)

    def test_no_side_effect_before_rejection(self):
        """Test all escapes are checked before any is run."""
        calls = []
        spec = [Escape(record_call, calls, 1), Escape(emit_file)]
        with pytest.raises(UnsafeSpec):
            build_safe(spec, HERE)
        assert calls == []

        build_safe([Escape(record_call, calls, 2)], HERE)
        assert calls == [2]

    def test_not_ground(self):
        with pytest.raises(NotGround):
            build_safe(E("p", Slot("name")), HERE)
        assert build_safe(fill(E("p", Slot("name")), name="x"), HERE) == E("div", E("p", "x"))

    def test_module_object_as_context(self):
        import sys
        tree = build_safe(E("p", Escape(emit_square, 2)), sys.modules[__name__])
        assert tree == E("div", E("p", E("li", "4")))

    def test_non_node_output_rejected(self):
        with pytest.raises(TypeError):
            build_tree(E("p", Escape(emit_non_node)), HERE)

    def test_dict_in_node_position_rejected(self):
        with pytest.raises(TypeError, match="not a node"):
            build_tree(E("p", {"a": 1}), HERE)

    def test_escape_in_attribute_is_evaluated(self):
        """Test an attribute escape contributes the text it emits, after the same check."""
        tree = build_safe(E("a", "top", href=Escape(emit_link)), HERE)
        assert tree == E("div", E("a", "top", href="#top"))
        with pytest.raises(UnsafeSpec):
            build_safe(E("a", "x", href=Escape(emit_file)), HERE)

    def test_slot_in_attribute_not_ground(self):
        with pytest.raises(NotGround):
            build_tree(E("a", "x", href=Slot("url")), HERE)


class TestCapability:
    """Tests for the fragment capability module."""

    def test_html_writes_unchecked(self, capsys):
        capability.html(E("b", "ok"))
        assert capsys.readouterr().out == "<div><b>ok</b></div>\n"

    def test_safe_html_checks(self, capsys):
        capability.safe_html(E("ul", Escape(emit_square, 2)), HERE)
        assert capsys.readouterr().out == "<div><ul><li>4</li></ul></div>\n"
        with pytest.raises(UnsafeSpec):
            capability.safe_html(E("p", Escape(emit_file)), HERE)
        assert capsys.readouterr().out == ""

    def test_exports_bind_html_to_safe_html(self):
        names = capability.exports(HERE)
        assert names["html"].func is capability.safe_html
        assert names["html"].keywords == {"context": HERE}
        assert set(names) == {"html", "safe_html", "warn", "error", "E", "Escape"}

"""
mdeval Core - Sandboxed evaluation of live fragments in Markdown documents

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

__version__ = "0.3.0"

from .nodes import Text, Element, Node, E, iter_nodes, text_content, fragment_code
from .errors import (
    MdEvalError,
    ConfigError,
    ParseError,
    ExecutionError,
    ResourceExceeded,
    EvalTimeout,
    SafetyError,
    UnsafeSpec,
    NotGround,
)
from .markup import parse_markup, parse_html_fragment, parse_html, serialize_html
from .diagnostics import DiagnosticMessage, DiagnosticScope, collect_diagnostics, with_collection
from .classifier import is_html, classify
from .safety import (
    BuildContext,
    Escape,
    Slot,
    SafetyPolicy,
    build_safe,
    default_policy,
    fill,
    is_ground,
)
from .config import MdEvalConfig, load_config, get_config
from .sandbox import EvalOptions, ExecutionContext, CapabilitySet, Success, Failure
from .transformer import contains_eval, transform, expand_dom, render_markdown

__all__ = [
    # Nodes
    "Text",
    "Element",
    "Node",
    "E",
    "iter_nodes",
    "text_content",
    "fragment_code",
    # Errors
    "MdEvalError",
    "ConfigError",
    "ParseError",
    "ExecutionError",
    "ResourceExceeded",
    "EvalTimeout",
    "SafetyError",
    "UnsafeSpec",
    "NotGround",
    # Markup adapters
    "parse_markup",
    "parse_html_fragment",
    "parse_html",
    "serialize_html",
    # Diagnostics
    "DiagnosticMessage",
    "DiagnosticScope",
    "collect_diagnostics",
    "with_collection",
    # Classifier
    "is_html",
    "classify",
    # Safety
    "BuildContext",
    "Escape",
    "Slot",
    "SafetyPolicy",
    "build_safe",
    "default_policy",
    "fill",
    "is_ground",
    # Config
    "MdEvalConfig",
    "load_config",
    "get_config",
    # Sandbox
    "EvalOptions",
    "ExecutionContext",
    "CapabilitySet",
    "Success",
    "Failure",
    # Transformer
    "contains_eval",
    "transform",
    "expand_dom",
    "render_markdown",
]

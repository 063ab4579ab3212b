"""
Tree Transformer - Evaluate fragments of a document tree in place

Walks a document depth-first, replaces every evaluable fragment by a
div.eval holding its outcome and rebuilds all other elements around their
transformed children. One ExecutionContext serves the whole traversal and is
closed when it ends, whatever happened to individual fragments.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .config import MdEvalConfig, SandboxConfig, get_config
from .markup import parse_markup, serialize_html
from .nodes import Element, Node, Text, Tree, fragment_code, iter_nodes
from .sandbox import EvalOptions, ExecutionContext

logger = logging.getLogger(__name__)


def contains_eval(tree: Tree) -> bool:
    """True when the tree holds at least one evaluable fragment."""
    return any(fragment_code(node) is not None for node in iter_nodes(tree))


def transform(tree: Tree, options: EvalOptions, sandbox_config: Optional[SandboxConfig] = None) -> Tree:
    """
    Evaluate every fragment of a tree.

    Args:
        tree: A node or a sequence of nodes
        options: Evaluation options, passed unchanged to every fragment
        sandbox_config: Execution context settings (defaults when None)

    Returns:
        A tree of the same shape; unchanged (same object) without fragments
    """
    if not contains_eval(tree):
        return tree

    context = ExecutionContext(sandbox_config)
    try:
        if isinstance(tree, (Text, Element)):
            result, count = _transform_node(tree, context, options, 0)
        else:
            nodes, count = _transform_nodes(tree, context, options, 0)
            result = tuple(nodes) if isinstance(tree, tuple) else nodes
        logger.debug(f"Evaluated {count} fragment(s) in {context.name}")
    finally:
        context.close()

    return result


def _transform_nodes(nodes: Sequence[Node], context: ExecutionContext, options: EvalOptions,
                     index: int) -> Tuple[List[Node], int]:
    result: List[Node] = []
    for node in nodes:
        new, index = _transform_node(node, context, options, index)
        result.append(new)
    return result, index


def _transform_node(node: Node, context: ExecutionContext, options: EvalOptions,
                    index: int) -> Tuple[Node, int]:
    if isinstance(node, Text):
        return node, index
    if not isinstance(node, Element):
        raise TypeError(f"Not a document node: {node!r}")

    code = fragment_code(node)
    if code is not None:
        outcome = context.evaluate(index, code, options)
        return Element("div", (("class", "eval"),), tuple(outcome.to_nodes())), index + 1

    children, index = _transform_nodes(node.children, context, options, index)
    return node.with_children(children), index


# =============================================================================
# Activation and rendering
# =============================================================================

def expand_dom(dom: Tree, config: Optional[MdEvalConfig] = None) -> Tree:
    """
    Document expansion hook: evaluate fragments when evaluation is enabled.

    A configured time limit <= 0 disables evaluation and returns dom as is.
    """
    config = config or get_config()
    if config.eval.time_limit <= 0:
        logger.debug("Evaluation disabled (time_limit <= 0)")
        return dom
    return transform(dom, EvalOptions(time_limit=config.eval.time_limit), config.sandbox)


def render_markdown(text: str, config: Optional[MdEvalConfig] = None) -> str:
    """Parse Markdown, evaluate its fragments and serialize to HTML."""
    return serialize_html(expand_dom(parse_markup(text), config))

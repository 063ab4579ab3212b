"""
Document Nodes - Closed tree model for evaluable Markdown documents

A document is a sequence of nodes. A node is either a leaf (Text) or a
compound (Element) with a tag, ordered unique attributes and ordered children.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

from dataclasses import dataclass, replace
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union


Attrs = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class Text:
    """Leaf node holding opaque text."""
    value: str


@dataclass(frozen=True)
class Element:
    """
    Compound node.

    Attributes are kept as an ordered tuple of (key, value) pairs; keys are
    unique. Children are kept in document order.
    """
    tag: str
    attrs: Attrs = ()
    children: Tuple["Node", ...] = ()

    def __post_init__(self):
        keys = [key for key, _ in self.attrs]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Duplicate attribute in <{self.tag}>: {keys}")

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return attribute value or default."""
        for name, value in self.attrs:
            if name == key:
                return value
        return default

    @property
    def classes(self) -> List[str]:
        """Class tokens of the element."""
        return (self.get("class") or "").split()

    def with_children(self, children: Iterable["Node"]) -> "Element":
        """Copy of this element with the same tag/attrs and new children."""
        return replace(self, children=tuple(children))


Node = Union[Text, Element]
Tree = Union[Node, Sequence[Node]]


def _attr_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return value


def _child(item: Any) -> Any:
    if isinstance(item, str):
        return Text(item)
    return item


def E(tag: str, *children: Any, **attrs: Any) -> Element:
    """
    Shorthand element constructor.

    Strings become Text nodes, nested lists are flattened, `class_` maps to
    the `class` attribute and list values are joined with spaces.

    Example:
        >>> E("pre", "print(1)", class_="code", ext="eval")
    """
    flat: List[Any] = []
    stack = list(reversed(children))
    while stack:
        item = stack.pop()
        if isinstance(item, list):
            stack.extend(reversed(item))
        else:
            flat.append(_child(item))

    pairs = tuple((key.rstrip("_"), _attr_value(value)) for key, value in attrs.items())
    return Element(tag, pairs, tuple(flat))


def iter_nodes(tree: Tree) -> Iterator[Node]:
    """Pre-order walk over a node or a sequence of nodes."""
    stack: List[Any] = [tree] if isinstance(tree, (Text, Element)) else list(reversed(list(tree)))
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, Element):
            stack.extend(reversed(node.children))


def text_content(tree: Tree) -> str:
    """Concatenated text of all leaves."""
    return "".join(node.value for node in iter_nodes(tree) if isinstance(node, Text))


def fragment_code(node: Any, ext: str = "eval") -> Optional[str]:
    """
    Return the code of an evaluable fragment, or None.

    A fragment is a `pre` element carrying `ext=<ext>` whose payload is text only.
    """
    if not isinstance(node, Element) or node.tag != "pre" or node.get("ext") != ext:
        return None
    if not all(isinstance(child, Text) for child in node.children):
        return None
    return "".join(child.value for child in node.children)

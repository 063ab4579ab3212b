"""
Markup adapters - Markdown to nodes, HTML fragment parsing and serialization

- parse_markup(): Markdown text -> nodes (mistune v3 AST); never raises
- parse_html_fragment(): strict HTML fragment parsing; raises ParseError
- serialize_html(): nodes -> HTML text

Fenced code blocks with an info string of `{eval}` (or `eval`) become
evaluable fragments: pre(class="code", ext="eval").

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import html
import io
import logging
import re
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple

import mistune

from .errors import ParseError
from .nodes import Element, Node, Text, Tree

logger = logging.getLogger(__name__)


VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})

_markdown = mistune.create_markdown(renderer="ast", plugins=["strikethrough"])

_INFO_RE = re.compile(r"^\{?\s*([A-Za-z0-9_+-]+)")


# =============================================================================
# Markdown -> nodes
# =============================================================================

def parse_markup(text: str) -> List[Node]:
    """
    Convert Markdown text to document nodes.

    Arbitrary text always yields a (possibly empty) node list.
    """
    tokens = _markdown(text or "")
    return _convert_tokens(tokens)


_OPEN_TAG_RE = re.compile(r"^<([A-Za-z][A-Za-z0-9-]*)(?:\s[^<>]*)?>$", re.S)
_CLOSE_TAG_RE = re.compile(r"^</([A-Za-z][A-Za-z0-9-]*)\s*>$")


def _inline_tag(token: Dict[str, Any], pattern: re.Pattern) -> Optional[str]:
    if token.get("type") != "inline_html":
        return None
    match = pattern.match(token.get("raw", "").strip())
    return match.group(1).lower() if match else None


def _closing_index(tokens: Sequence[Dict[str, Any]], start: int, tag: str) -> Optional[int]:
    """Index of the inline token closing tokens[start], or None."""
    depth = 0
    for index in range(start + 1, len(tokens)):
        if _inline_tag(tokens[index], _OPEN_TAG_RE) == tag:
            depth += 1
        elif _inline_tag(tokens[index], _CLOSE_TAG_RE) == tag:
            if depth == 0:
                return index
            depth -= 1
    return None


def _convert_tokens(tokens: Sequence[Dict[str, Any]]) -> List[Node]:
    # Inline HTML arrives one tag per token; pair open and close tags around the tokens between them.
    nodes: List[Node] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        tag = _inline_tag(token, _OPEN_TAG_RE)
        end = None
        if tag and tag not in VOID_ELEMENTS and not token["raw"].rstrip().endswith("/>"):
            end = _closing_index(tokens, index, tag)
        if end is not None:
            shell = _raw_html(token["raw"].strip() + f"</{tag}>")
            if len(shell) == 1 and isinstance(shell[0], Element):
                nodes.append(shell[0].with_children(_convert_tokens(tokens[index + 1:end])))
                index = end + 1
                continue
        nodes.extend(_convert_token(token))
        index += 1
    return nodes


def _element(tag: str, token: Dict[str, Any], attrs: Tuple[Tuple[str, str], ...] = ()) -> Element:
    return Element(tag, attrs, tuple(_convert_tokens(token.get("children") or [])))


def _code_block(token: Dict[str, Any]) -> Element:
    info = (token.get("attrs") or {}).get("info") or ""
    match = _INFO_RE.match(info.strip())
    attrs: Tuple[Tuple[str, str], ...] = (("class", "code"),)
    if match:
        attrs += (("ext", match.group(1)),)
    return Element("pre", attrs, (Text(token.get("raw", "")),))


def _raw_html(raw: str) -> List[Node]:
    try:
        with io.StringIO(raw) as stream:
            return parse_html_fragment(stream)
    except ParseError:
        return [Text(raw)]


def _convert_token(token: Dict[str, Any]) -> List[Node]:
    kind = token.get("type")
    attrs = token.get("attrs") or {}

    if kind == "text":
        return [Text(html.unescape(token.get("raw", "")))]
    if kind == "paragraph":
        return [_element("p", token)]
    if kind == "heading":
        return [_element(f"h{attrs.get('level', 1)}", token)]
    if kind == "emphasis":
        return [_element("em", token)]
    if kind == "strong":
        return [_element("strong", token)]
    if kind == "strikethrough":
        return [_element("del", token)]
    if kind == "codespan":
        return [Element("code", (), (Text(token.get("raw", "")),))]
    if kind == "linebreak":
        return [Element("br")]
    if kind == "softbreak":
        return [Text("\n")]
    if kind == "block_code":
        return [_code_block(token)]
    if kind == "block_quote":
        return [_element("blockquote", token)]
    if kind == "list":
        if attrs.get("ordered"):
            start = attrs.get("start")
            extra = (("start", str(start)),) if start not in (None, 1) else ()
            return [_element("ol", token, extra)]
        return [_element("ul", token)]
    if kind == "list_item":
        return [_element("li", token)]
    if kind == "block_text":
        return _convert_tokens(token.get("children") or [])
    if kind == "link":
        link_attrs: Tuple[Tuple[str, str], ...] = (("href", attrs.get("url", "")),)
        if attrs.get("title"):
            link_attrs += (("title", attrs["title"]),)
        return [_element("a", token, link_attrs)]
    if kind == "image":
        alt = "".join(child.get("raw", "") for child in token.get("children") or [])
        return [Element("img", (("src", attrs.get("url", "")), ("alt", alt)))]
    if kind == "thematic_break":
        return [Element("hr")]
    if kind in ("block_html", "inline_html"):
        return _raw_html(token.get("raw", ""))
    if kind == "blank_line":
        return []

    logger.debug(f"Unhandled markdown token type: {kind}")
    if token.get("children"):
        return _convert_tokens(token["children"])
    if token.get("raw"):
        return [Text(token["raw"])]
    return []


# =============================================================================
# HTML fragments
# =============================================================================

class _TreeBuilder(HTMLParser):
    """Builds nodes from HTML, rejecting unbalanced markup."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._stack: List[Tuple[str, Tuple[Tuple[str, str], ...], List[Node]]] = [("#root", (), [])]

    @staticmethod
    def _attrs(attrs: List[Tuple[str, Optional[str]]]) -> Tuple[Tuple[str, str], ...]:
        seen: Dict[str, str] = {}
        for key, value in attrs:
            if key not in seen:
                seen[key] = "" if value is None else value
        return tuple(seen.items())

    def handle_starttag(self, tag, attrs):
        if tag in VOID_ELEMENTS:
            self._stack[-1][2].append(Element(tag, self._attrs(attrs)))
        else:
            self._stack.append((tag, self._attrs(attrs), []))

    def handle_startendtag(self, tag, attrs):
        self._stack[-1][2].append(Element(tag, self._attrs(attrs)))

    def handle_endtag(self, tag):
        if tag in VOID_ELEMENTS:
            return
        open_tag, attrs, children = self._stack[-1]
        if open_tag != tag:
            expected = "end of input" if open_tag == "#root" else f"</{open_tag}>"
            raise ParseError(f"Unexpected </{tag}>, expected {expected}")
        self._stack.pop()
        self._stack[-1][2].append(Element(tag, attrs, tuple(children)))

    def handle_data(self, data):
        siblings = self._stack[-1][2]
        if siblings and isinstance(siblings[-1], Text):
            siblings[-1] = Text(siblings[-1].value + data)
        else:
            siblings.append(Text(data))

    def result(self) -> List[Node]:
        self.close()
        if len(self._stack) > 1:
            raise ParseError(f"Unclosed <{self._stack[-1][0]}>")
        return [node for node in self._stack[0][2]
                if not (isinstance(node, Text) and not node.value.strip())]


def parse_html_fragment(stream: TextIO) -> List[Node]:
    """
    Parse an HTML fragment read from a text stream.

    Whitespace-only text at the top level is dropped.

    Raises:
        ParseError: if the markup is unbalanced or cannot be parsed
    """
    builder = _TreeBuilder()
    try:
        builder.feed(stream.read())
        return builder.result()
    except ParseError:
        raise
    except Exception as e:
        raise ParseError(f"Malformed HTML: {e}") from e


def parse_html(text: str) -> List[Node]:
    """Parse an HTML fragment from a string."""
    with io.StringIO(text) as stream:
        return parse_html_fragment(stream)


# =============================================================================
# Serialization
# =============================================================================

def _serialize(node: Node, parts: List[str]) -> None:
    if isinstance(node, Text):
        parts.append(html.escape(node.value, quote=False))
        return
    if isinstance(node, Element):
        attrs = "".join(f' {key}="{html.escape(str(value))}"' for key, value in node.attrs)
        parts.append(f"<{node.tag}{attrs}>")
        if node.tag in VOID_ELEMENTS:
            return
        for child in node.children:
            _serialize(child, parts)
        parts.append(f"</{node.tag}>")
        return
    raise TypeError(f"Not a document node: {node!r}")


def serialize_html(tree: Tree) -> str:
    """Serialize a node or a sequence of nodes to HTML."""
    parts: List[str] = []
    for node in ([tree] if isinstance(tree, (Text, Element)) else tree):
        _serialize(node, parts)
    return "".join(parts)

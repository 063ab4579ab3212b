"""
Output Classifier - Turn captured fragment output into document nodes

Output that is a single HTML element is parsed as HTML; anything else is
read as Markdown.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import io
import logging
import re
from typing import List

from .errors import ParseError
from .markup import parse_html_fragment, parse_markup
from .nodes import Node

logger = logging.getLogger(__name__)


# Opening tag, any body, matching closing tag, trailing blanks only.
_SINGLE_ELEMENT_RE = re.compile(r"<(?P<tag>[a-z]+)(?![a-z]).*</(?P=tag)>\s*\Z", re.DOTALL)


def is_html(text: str) -> bool:
    """True when text looks like one HTML element (leading blanks allowed)."""
    return _SINGLE_ELEMENT_RE.match(text.lstrip()) is not None


def classify(text: str) -> List[Node]:
    """
    Convert raw fragment output to nodes.

    Tries the structured HTML path first when the text has the shape of a
    single element; falls back to Markdown on mismatch or parse failure.
    """
    if is_html(text):
        try:
            with io.StringIO(text) as stream:
                return parse_html_fragment(stream)
        except ParseError as e:
            logger.debug(f"HTML output rejected, reading as markdown: {e}")
    return parse_markup(text)

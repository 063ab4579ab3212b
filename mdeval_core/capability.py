"""
Capability module granted to evaluated fragments

Fragments run with stripped builtins and an import allowlist; the names
returned by exports() are the only extra capabilities they get. Inside a
fragment, `html` is bound to the safety-checked `safe_html`.

Example fragment:

    ```{eval}
    def row(n, out, context):
        out.append(E("li", str(n * n)))

    html(E("ul", [Escape(row, i) for i in range(3)]))
    warn("squares only")
    ```

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import functools
import logging
import sys
from typing import Any, Callable, Dict, Optional

from .markup import serialize_html
from .nodes import E
from .safety import BuildContext, Escape, build_safe, build_tree

fragment_logger = logging.getLogger("mdeval.fragment")


def _write(tree) -> None:
    sys.stdout.write(serialize_html(tree) + "\n")


def html(spec: Any, context: Optional[BuildContext] = None) -> None:
    """Write the HTML of a spec to standard output, unchecked."""
    _write(build_tree(spec, context or BuildContext(__name__)))


def safe_html(spec: Any, context: Optional[BuildContext] = None) -> None:
    """Write the HTML of a spec after proving its escape markers safe."""
    if context is None:
        context = BuildContext(__name__)
    _write(build_safe(spec, context))


def warn(message: str) -> None:
    """Emit a warning diagnostic."""
    fragment_logger.warning(message)


def error(message: str) -> None:
    """Emit an error diagnostic; evaluation continues."""
    fragment_logger.error(message)


def exports(context: BuildContext) -> Dict[str, Callable]:
    """Names installed into a fragment namespace bound to its declaring context."""
    checked = functools.partial(safe_html, context=context)
    return {
        "html": checked,
        "safe_html": checked,
        "warn": warn,
        "error": error,
        "E": E,
        "Escape": Escape,
    }

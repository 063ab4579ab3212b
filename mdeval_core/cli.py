#!/usr/bin/env python3
"""
mdeval Command Line Interface
=============================

Render evaluable Markdown documents and inspect the configuration.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19

Usage:
    mdeval render FILE     Evaluate fragments and print the HTML
    mdeval config          Show current configuration
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import find_config_file, load_config, save_config
from .errors import MdEvalError
from .transformer import render_markdown

# =============================================================================
# ANSI Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    CYAN = '\033[0;36m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color

    @classmethod
    def disable(cls):
        """Disable colors (for non-TTY output)."""
        cls.RED = cls.GREEN = cls.YELLOW = ''
        cls.CYAN = cls.BOLD = cls.NC = ''


# Status lines go to stderr so rendered HTML can be piped from stdout.
def print_ok(msg: str) -> None:
    print(f"{Colors.GREEN}✓{Colors.NC} {msg}", file=sys.stderr)


def print_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}⚠{Colors.NC} {msg}", file=sys.stderr)


def print_error(msg: str) -> None:
    print(f"{Colors.RED}✗{Colors.NC} {msg}", file=sys.stderr)


def print_header(msg: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.CYAN}{msg}{Colors.NC}")
    print("=" * len(msg))


# =============================================================================
# Commands
# =============================================================================

def cmd_render(args: argparse.Namespace) -> int:
    """Evaluate a Markdown file and write its HTML."""
    source = Path(args.file)
    if not source.exists():
        print_error(f"File not found: {source}")
        return 1

    config = load_config(args.config)
    if args.time_limit is not None:
        config.eval.time_limit = args.time_limit

    try:
        rendered = render_markdown(source.read_text(encoding="utf-8"), config)
    except MdEvalError as e:
        print_error(f"Rendering failed: {e}")
        return 1

    if args.output:
        Path(args.output).write_text(rendered + "\n", encoding="utf-8")
        print_ok(f"Written: {args.output}")
    else:
        print(rendered)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Show current configuration."""
    print_header("mdeval Configuration")

    path = args.config or find_config_file()
    if path:
        print_ok(f"Config file: {path}")
    else:
        print_warn("No configuration file found, using defaults")

    config = load_config(path)
    sections = {
        "Eval": {
            "Time limit": f"{config.eval.time_limit:g}s" if config.eval.time_limit > 0 else "disabled",
        },
        "Sandbox": {
            "Program space": f"{config.sandbox.program_space_mb} MB" if config.sandbox.program_space_mb else "unlimited",
            "Allowed imports": ", ".join(config.sandbox.allowed_imports) or "(none)",
            "Capability module": config.sandbox.capability_module,
            "Start method": config.sandbox.start_method,
        },
        "Logging": {
            "Level": config.logging.level,
        },
    }

    for section, items in sections.items():
        print(f"{Colors.BOLD}{section}:{Colors.NC}")
        for key, value in items.items():
            print(f"  {key}: {value}")
        print()

    if args.save:
        save_config(config, Path(args.save))
        print_ok(f"Saved: {args.save}")

    return 0


# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    if not sys.stdout.isatty():
        Colors.disable()

    parser = argparse.ArgumentParser(
        prog="mdeval",
        description="mdeval - Evaluable Markdown renderer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mdeval render notes.md                 Print the rendered HTML
  mdeval render notes.md -o notes.html   Write it to a file
  mdeval render notes.md --time-limit 2  Override the fragment time limit
  mdeval config --save mdeval.yaml       Write the effective configuration
        """
    )
    parser.add_argument("-c", "--config", type=Path, default=None, help="Path to mdeval.yaml")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # render
    sub = subparsers.add_parser("render", help="Evaluate a Markdown file and print HTML")
    sub.add_argument("file", help="Markdown file")
    sub.add_argument("-o", "--output", help="Output file (default: stdout)")
    sub.add_argument("--time-limit", type=float, default=None,
                     help="Seconds per fragment; 0 disables evaluation")
    sub.set_defaults(func=cmd_render)

    # config
    sub = subparsers.add_parser("config", help="Show current configuration")
    sub.add_argument("--save", metavar="PATH", help="Write the effective configuration to PATH")
    sub.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        level = load_config(args.config).logging.level
    except MdEvalError as e:
        print_error(str(e))
        return 1
    logging.basicConfig(level=getattr(logging, level), format="%(levelname)s %(name)s: %(message)s")

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

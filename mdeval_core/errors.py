"""
Error taxonomy for mdeval

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""


class MdEvalError(Exception):
    """Base error for mdeval failures."""


class ConfigError(MdEvalError):
    """Raised when configuration values are invalid."""


class ParseError(MdEvalError):
    """Raised when text cannot be parsed as a structured HTML fragment."""


class ExecutionError(MdEvalError):
    """Raised when an evaluated fragment fails to compile or run."""


class ResourceExceeded(ExecutionError):
    """Raised when a fragment exceeds the program space quota."""


class EvalTimeout(MdEvalError):
    """Raised when a fragment exceeds its time limit."""


class SafetyError(MdEvalError):
    """Base error for rejected safe builds."""


class UnsafeSpec(SafetyError):
    """Raised when an escape marker calls something outside the safety policy."""


class NotGround(SafetyError):
    """Raised when a build spec still contains unfilled slots."""

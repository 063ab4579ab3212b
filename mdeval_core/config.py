"""
mdeval Configuration System
===========================

Loads and manages configuration from mdeval.yaml with environment variable overrides.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import os
import yaml
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .errors import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_IMPORTS: List[str] = [
    "math", "cmath", "random", "re", "json", "string", "textwrap",
    "datetime", "calendar", "itertools", "functools", "operator",
    "collections", "statistics", "fractions", "decimal", "warnings",
]

DEFAULT_CAPABILITY_MODULE = "mdeval_core.capability"


# =============================================================================
# Configuration Data Classes
# =============================================================================

@dataclass
class EvalConfig:
    """Evaluation settings. A time limit <= 0 disables evaluation."""
    time_limit: float = 10.0  # seconds


@dataclass
class SandboxConfig:
    """Execution context settings."""
    program_space_mb: int = 1024  # 0 disables the quota
    allowed_imports: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_IMPORTS))
    capability_module: str = DEFAULT_CAPABILITY_MODULE
    start_method: str = "spawn"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "WARNING"


@dataclass
class MdEvalConfig:
    """Root configuration container."""
    eval: EvalConfig = field(default_factory=EvalConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    version: str = "0.3.0"


# =============================================================================
# Configuration Loader
# =============================================================================

def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find mdeval.yaml by searching upward from start_path.

    Search order:
    1. start_path / mdeval.yaml
    2. start_path / .mdeval / mdeval.yaml
    3. Parent directories (recursive)
    4. ~/.config/mdeval/mdeval.yaml

    Args:
        start_path: Starting directory (defaults to cwd)

    Returns:
        Path to config file or None if not found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = Path(start_path).resolve()
    for _ in range(10):  # Max 10 levels up
        for candidate in (current / "mdeval.yaml", current / ".mdeval" / "mdeval.yaml"):
            if candidate.exists():
                return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    user_config = Path.home() / ".config" / "mdeval" / "mdeval.yaml"
    if user_config.exists():
        return user_config

    return None


def load_config(config_path: Optional[Path] = None) -> MdEvalConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Environment variables override config file values:
    - MDEVAL_TIME_LIMIT -> eval.time_limit
    - MDEVAL_PROGRAM_SPACE_MB -> sandbox.program_space_mb
    - MDEVAL_ALLOWED_IMPORTS -> sandbox.allowed_imports (comma separated)
    - MDEVAL_LOG_LEVEL -> logging.level

    Args:
        config_path: Path to config file (auto-detected if None)

    Returns:
        MdEvalConfig instance

    Raises:
        ConfigError: if an environment override is not a valid value
    """
    config = MdEvalConfig()

    if config_path is None:
        config_path = find_config_file()

    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
            config = _parse_config_dict(data)
        except Exception as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
    else:
        logger.info("No config file found, using defaults")

    config = _apply_env_overrides(config)
    _validate_config(config)

    return config


def _parse_config_dict(data: Dict[str, Any]) -> MdEvalConfig:
    """Parse configuration dictionary into MdEvalConfig."""
    config = MdEvalConfig()

    if "eval" in data:
        ev = data["eval"] or {}
        config.eval = EvalConfig(
            time_limit=float(ev.get("time_limit", config.eval.time_limit)),
        )

    if "sandbox" in data:
        sb = data["sandbox"] or {}
        config.sandbox = SandboxConfig(
            program_space_mb=int(sb.get("program_space_mb", config.sandbox.program_space_mb)),
            allowed_imports=list(sb.get("allowed_imports", config.sandbox.allowed_imports)),
            capability_module=sb.get("capability_module", config.sandbox.capability_module),
            start_method=sb.get("start_method", config.sandbox.start_method),
        )

    if "logging" in data:
        log = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(log.get("level", config.logging.level)).upper(),
        )

    config.version = data.get("version", config.version)

    return config


def _env_number(name: str, kind: type):
    raw = os.environ[name]
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a {kind.__name__}, got {raw!r}") from e


def _apply_env_overrides(config: MdEvalConfig) -> MdEvalConfig:
    """Apply environment variable overrides to config."""

    if os.environ.get("MDEVAL_TIME_LIMIT"):
        config.eval.time_limit = _env_number("MDEVAL_TIME_LIMIT", float)

    if os.environ.get("MDEVAL_PROGRAM_SPACE_MB"):
        config.sandbox.program_space_mb = _env_number("MDEVAL_PROGRAM_SPACE_MB", int)

    if os.environ.get("MDEVAL_ALLOWED_IMPORTS"):
        config.sandbox.allowed_imports = [
            name.strip() for name in os.environ["MDEVAL_ALLOWED_IMPORTS"].split(",") if name.strip()
        ]

    if os.environ.get("MDEVAL_LOG_LEVEL"):
        config.logging.level = os.environ["MDEVAL_LOG_LEVEL"].upper()

    return config


def _validate_config(config: MdEvalConfig) -> None:
    """Validate configuration and log warnings."""

    if config.sandbox.program_space_mb < 0:
        logger.warning(f"Negative program space {config.sandbox.program_space_mb} MB, disabling quota")
        config.sandbox.program_space_mb = 0

    valid_methods = ("spawn", "fork", "forkserver")
    if config.sandbox.start_method not in valid_methods:
        logger.warning(f"Unknown start method '{config.sandbox.start_method}', defaulting to 'spawn'")
        config.sandbox.start_method = "spawn"

    valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
    if config.logging.level not in valid_levels:
        logger.warning(f"Unknown log level '{config.logging.level}', defaulting to 'WARNING'")
        config.logging.level = "WARNING"


def save_config(config: MdEvalConfig, path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: MdEvalConfig instance
        path: Output path
    """
    data = {
        "version": config.version,
        "eval": {
            "time_limit": config.eval.time_limit,
        },
        "sandbox": {
            "program_space_mb": config.sandbox.program_space_mb,
            "allowed_imports": config.sandbox.allowed_imports,
            "capability_module": config.sandbox.capability_module,
            "start_method": config.sandbox.start_method,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved config to: {path}")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[MdEvalConfig] = None


def get_config() -> MdEvalConfig:
    """Get the global configuration instance (lazy-loaded)."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reload_config(config_path: Optional[Path] = None) -> MdEvalConfig:
    """Reload configuration from file."""
    global _global_config
    _global_config = load_config(config_path)
    return _global_config

"""
Pytest Configuration and Fixtures

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-19
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mdeval_core.config import MdEvalConfig, SandboxConfig
from mdeval_core.sandbox import EvalOptions, ExecutionContext


MDEVAL_ENV = ("MDEVAL_TIME_LIMIT", "MDEVAL_PROGRAM_SPACE_MB", "MDEVAL_LOG_LEVEL", "MDEVAL_ALLOWED_IMPORTS")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment overrides out of the tests."""
    for name in MDEVAL_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fast_options() -> EvalOptions:
    """Options with a short but safe time limit for worker round trips."""
    return EvalOptions(time_limit=5.0)


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    """Sandbox settings without a quota (tests run on any platform)."""
    return SandboxConfig(program_space_mb=0)


@pytest.fixture
def config(sandbox_config: SandboxConfig) -> MdEvalConfig:
    """Full configuration using the test sandbox settings."""
    cfg = MdEvalConfig()
    cfg.eval.time_limit = 5.0
    cfg.sandbox = sandbox_config
    return cfg


@pytest.fixture
def context(sandbox_config: SandboxConfig) -> Generator[ExecutionContext, None, None]:
    """An execution context closed after the test."""
    ctx = ExecutionContext(sandbox_config, name="eval_test")
    yield ctx
    ctx.close()


@pytest.fixture
def sample_markdown() -> str:
    """Document with two fragments sharing a definition."""
    return """# Report

Some *text* before.

```{eval}
def square(n):
    return n * n
print("<b>ok</b>")
```

```{eval}
print(f"Square of 7 is **{square(7)}**")
```
"""

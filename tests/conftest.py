"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from kegworks.core.config.loader import Settings


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Fast-cycling settings rooted in a temporary prefix."""
    return Settings(
        prefix=tmp_path / "prefix",
        formula_dirs=[tmp_path / "formulae"],
        architecture="arm",
        fetch_retries=0,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        stop_grace_period=2.0,
        restart_base_delay=0.2,
        restart_max_delay=0.5,
        restart_stable_after=5.0,
        poll_interval=0.05,
    )

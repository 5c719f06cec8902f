"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from infracompose.adapters.mock import MockAdapter
from infracompose.adapters.registry import AdapterRegistry
from infracompose.core.reliability.retry import RetryPolicy

from tests.builders import COMPOSITION_YAML


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter()


@pytest.fixture
def registry(mock_adapter: MockAdapter) -> AdapterRegistry:
    """Registry routing every kind to the mock, with instant retries."""
    reg = AdapterRegistry(
        policy=RetryPolicy(max_attempts=3, base_delay=0.0, timeout=None, jitter=0.0),
        sleep=lambda _: None,
    )
    reg.register(mock_adapter)
    return reg


@pytest.fixture
def composition_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A two-stack infra.yml in a temp project, with provider env cleared."""
    for var in ("IC_ACCOUNT", "IC_REGION", "IC_ENVIRONMENT", "IC_MAX_ATTEMPTS",
                "IC_BASE_DELAY", "IC_CALL_TIMEOUT", "IC_LOG_LEVEL", "IC_LOG_FILE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("IC_BASE_DELAY", "0")
    monkeypatch.setenv("IC_CALL_TIMEOUT", "0")
    path = tmp_path / "infra.yml"
    path.write_text(COMPOSITION_YAML)
    return path

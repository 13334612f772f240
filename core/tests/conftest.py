import pytest

import flowsim.config
from flowsim.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's ~/.flowsim configuration out of the tests."""
    monkeypatch.setattr(flowsim.config, "FLOWSIM_CONFIG_FILE", tmp_path / "configuration.json")
    monkeypatch.delenv("FLOWSIM_MAX_STEPS", raising=False)
    yield tmp_path / "configuration.json"
    clear_trace_context()

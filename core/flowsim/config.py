"""Shared flowsim configuration utilities.

Reads ~/.flowsim/configuration.json so that the CLI, the graph store and
the simulator share one set of defaults.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWSIM_CONFIG_FILE = Path.home() / ".flowsim" / "configuration.json"

DEFAULT_MAX_STEPS = 1000
DEFAULT_LOOP_CONCURRENCY = 10
DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_PAYLOAD: dict[str, Any] = {"order_id": "ORD-2024-001", "amount": 8500}


def get_flowsim_config() -> dict[str, Any]:
    """Load flowsim configuration from ~/.flowsim/configuration.json."""
    if not FLOWSIM_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWSIM_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _simulator_section() -> dict[str, Any]:
    section = get_flowsim_config().get("simulator", {})
    return section if isinstance(section, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_max_steps() -> int:
    """Step budget per run: FLOWSIM_MAX_STEPS, then the config file, then 1000."""
    env_value = os.environ.get("FLOWSIM_MAX_STEPS")
    if env_value:
        try:
            return max(1, int(env_value))
        except ValueError:
            pass
    try:
        return max(1, int(_simulator_section().get("max_steps", DEFAULT_MAX_STEPS)))
    except (TypeError, ValueError):
        return DEFAULT_MAX_STEPS


def get_default_payload() -> Any:
    """Payload used when neither the caller nor the start node supplies one."""
    payload = _simulator_section().get("default_payload")
    if payload is None:
        return dict(DEFAULT_PAYLOAD)
    return payload


def get_loop_concurrency() -> int:
    try:
        value = int(_simulator_section().get("loop_concurrency", DEFAULT_LOOP_CONCURRENCY))
    except (TypeError, ValueError):
        return DEFAULT_LOOP_CONCURRENCY
    return max(1, value)


def get_log_level() -> str:
    """Level for the CLI's logs when --verbose is not given."""
    level = str(_simulator_section().get("log_level", DEFAULT_LOG_LEVEL)).upper()
    return level if level in LOG_LEVELS else DEFAULT_LOG_LEVEL


# ---------------------------------------------------------------------------
# SimulatorConfig
# ---------------------------------------------------------------------------


@dataclass
class SimulatorConfig:
    """Simulator settings loaded from ~/.flowsim/configuration.json."""

    max_steps: int = field(default_factory=get_max_steps)
    default_payload: Any = field(default_factory=get_default_payload)
    loop_concurrency: int = field(default_factory=get_loop_concurrency)
    log_level: str = field(default_factory=get_log_level)

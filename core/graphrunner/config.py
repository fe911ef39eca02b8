"""Shared graphrunner configuration.

Reads ~/.graphrunner/configuration.json once per lookup; environment
variables override the file:

- ``GRAPHRUNNER_MODEL``: default language model
- ``GRAPHRUNNER_ACTIVITY_TIMEOUT``: start-to-close timeout of activities (seconds)
- ``FILES_ROOT``: where run files are stored
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_ACTIVITY_TIMEOUT = 600.0

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

GRAPHRUNNER_CONFIG_FILE = Path.home() / ".graphrunner" / "configuration.json"


def get_graphrunner_config() -> dict[str, Any]:
    """Load configuration from ~/.graphrunner/configuration.json."""
    if not GRAPHRUNNER_CONFIG_FILE.exists():
        return {}
    try:
        with open(GRAPHRUNNER_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the default language model (e.g. 'gpt-4o-mini' or 'anthropic/claude-sonnet-4-20250514')."""
    if os.environ.get("GRAPHRUNNER_MODEL"):
        return os.environ["GRAPHRUNNER_MODEL"]
    llm = get_graphrunner_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return llm.get("model") or DEFAULT_MODEL


def get_temperature() -> float:
    return float(get_graphrunner_config().get("llm", {}).get("temperature", DEFAULT_TEMPERATURE))


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return int(get_graphrunner_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS))


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_graphrunner_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_image_model() -> str | None:
    return get_graphrunner_config().get("llm", {}).get("image_model")


def get_activity_timeout() -> float:
    if os.environ.get("GRAPHRUNNER_ACTIVITY_TIMEOUT"):
        return float(os.environ["GRAPHRUNNER_ACTIVITY_TIMEOUT"])
    runner = get_graphrunner_config().get("runner", {})
    return float(runner.get("activity_timeout", DEFAULT_ACTIVITY_TIMEOUT))


def get_max_attempts() -> int:
    return int(get_graphrunner_config().get("runner", {}).get("max_attempts", 1))


def get_files_root() -> Path:
    if os.environ.get("FILES_ROOT"):
        return Path(os.environ["FILES_ROOT"])
    runner = get_graphrunner_config().get("runner", {})
    return Path(runner.get("files_root") or Path.cwd() / ".run-files")


# ---------------------------------------------------------------------------
# RunnerConfig
# ---------------------------------------------------------------------------


@dataclass
class RunnerConfig:
    """Runner configuration loaded from ~/.graphrunner/configuration.json and the environment."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = field(default_factory=get_temperature)
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
    image_model: str | None = field(default_factory=get_image_model)
    activity_timeout: float = field(default_factory=get_activity_timeout)
    max_attempts: int = field(default_factory=get_max_attempts)
    files_root: Path = field(default_factory=get_files_root)

    @property
    def generation_args(self) -> dict[str, Any]:
        return {"temperature": self.temperature, "max_tokens": self.max_tokens}

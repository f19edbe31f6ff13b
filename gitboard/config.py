"""Configuration loading for gitboard.

Settings are layered, later sources winning:
1. Built-in defaults
2. Global: ~/.gitboard/config.json
3. Per-repository: {repo}/.gitboard/config.json
4. Environment variables (GITBOARD_*)

String values in the JSON files may reference environment variables with
${VAR} or ${VAR:-default}.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from gitboard.exceptions import ConfigError

__all__ = [
    "SyncSettings",
    "load_settings",
    "expand_env_vars",
    "GLOBAL_CONFIG_PATH",
]

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_PATH = Path.home() / ".gitboard" / "config.json"
PROJECT_CONFIG_NAME = Path(".gitboard") / "config.json"

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

# setting name -> environment variable
ENV_OVERRIDES = {
    "repo_path": "GITBOARD_REPO",
    "document_name": "GITBOARD_DOCUMENT",
    "remote_name": "GITBOARD_REMOTE",
    "branch": "GITBOARD_BRANCH",
    "remote_url": "GITBOARD_REMOTE_URL",
    "max_pull_attempts": "GITBOARD_PULL_ATTEMPTS",
    "max_push_attempts": "GITBOARD_PUSH_ATTEMPTS",
    "max_race_retries": "GITBOARD_RACE_RETRIES",
    "backoff_base": "GITBOARD_BACKOFF_BASE",
    "auto_sync_interval": "GITBOARD_AUTO_SYNC_INTERVAL",
    "debounce": "GITBOARD_DEBOUNCE",
    "sync_on_write": "GITBOARD_SYNC_ON_WRITE",
    "max_queued_operations": "GITBOARD_MAX_QUEUE",
    "author": "GITBOARD_AUTHOR",
    "log_level": "GITBOARD_LOG_LEVEL",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def expand_env_vars(value: str) -> str:
    """Expand ${VAR} and ${VAR:-default} references in a string.

    Unset variables without a default expand to the empty string.
    """

    def replacer(match: re.Match) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        default = match.group(2)
        return default if default is not None else ""

    return ENV_VAR_PATTERN.sub(replacer, value)


def _default_author() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


@dataclass
class SyncSettings:
    """Settings for one gitboard repository and its sync engine."""

    repo_path: Path = field(default_factory=Path.cwd)
    document_name: str = "todos.json"
    remote_name: str = "origin"
    branch: str | None = None
    remote_url: str | None = None
    max_pull_attempts: int = 3
    max_push_attempts: int = 3
    max_race_retries: int = 3
    backoff_base: float = 1.0  # seconds; retry n waits backoff_base * 2**n
    auto_sync_interval: float | None = None
    debounce: float = 0.0
    sync_on_write: bool = False
    max_queued_operations: int = 100
    author: str = field(default_factory=_default_author)
    log_level: str = "WARNING"

    @property
    def document_path(self) -> Path:
        return Path(self.repo_path) / self.document_name

    def __post_init__(self):
        self.repo_path = Path(self.repo_path).expanduser()
        for name in ("max_pull_attempts", "max_push_attempts", "max_queued_operations"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1")
        if self.max_race_retries < 0:
            raise ConfigError("max_race_retries must not be negative")
        if self.backoff_base < 0 or self.debounce < 0:
            raise ConfigError("backoff_base and debounce must not be negative")
        if self.auto_sync_interval is not None and self.auto_sync_interval <= 0:
            raise ConfigError("auto_sync_interval must be positive")
        self.log_level = self.log_level.upper()
        if self.log_level not in logging.getLevelNamesMapping():
            raise ConfigError(f"Unknown log level: {self.log_level}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create settings from a dictionary, coercing string values."""
        return cls()._merged(data)

    def _merged(self, data: dict[str, Any]) -> "SyncSettings":
        known = {f.name: f for f in fields(self)}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")

        changes = {}
        for name, value in data.items():
            if name not in known:
                continue
            if isinstance(value, str):
                value = expand_env_vars(value)
            changes[name] = _coerce(name, value)

        try:
            return replace(self, **changes)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings: {e}") from e


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw config or environment value to the setting's type."""
    if value is None:
        return None
    try:
        if name in ("max_pull_attempts", "max_push_attempts", "max_race_retries",
                    "max_queued_operations"):
            return int(value)
        if name in ("backoff_base", "debounce"):
            return float(value)
        if name == "auto_sync_interval":
            return float(value) if value != "" else None
        if name == "sync_on_write":
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if name == "repo_path":
            return Path(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {e}") from e
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    logger.debug(f"Loaded config from {path}")
    return data


def _env_values() -> dict[str, str]:
    return {
        name: os.environ[var] for name, var in ENV_OVERRIDES.items() if var in os.environ
    }


def load_settings(
    repo_path: Path | str | None = None,
    global_config: Path | None = None,
    **overrides: Any,
) -> SyncSettings:
    """Load settings from config files and the environment.

    Args:
        repo_path: Repository to use. Falls back to GITBOARD_REPO, then cwd.
        global_config: Override the global config location (tests).
        **overrides: Explicit values that win over every other source.

    Returns:
        Fully merged SyncSettings

    Raises:
        ConfigError: If a config file is malformed or a value is invalid
    """
    env = _env_values()
    settings = SyncSettings()
    settings = settings._merged(_read_config_file(global_config or GLOBAL_CONFIG_PATH))

    if repo_path is not None:
        settings = replace(settings, repo_path=Path(repo_path))
    elif "repo_path" in env:
        settings = settings._merged({"repo_path": env["repo_path"]})

    project = _read_config_file(settings.repo_path / PROJECT_CONFIG_NAME)
    project.pop("repo_path", None)
    settings = settings._merged(project)
    if repo_path is not None:
        env.pop("repo_path", None)
    settings = settings._merged(env)

    explicit = {k: v for k, v in overrides.items() if v is not None}
    return settings._merged(explicit)

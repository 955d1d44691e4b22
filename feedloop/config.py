"""
Configuration management for feedloop.

Loads and validates the feedloop.yaml loop definition. A broken definition
cannot be meaningfully retried, so every problem surfaces as ConfigError
before any watching begins.
"""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .step import DEFAULT_MAX_OUTPUT_BYTES, Step
from .utils import translate_glob

CONFIG_ENV_VAR = "FEEDLOOP_CONFIG"
DEFAULT_CONFIG_NAME = "feedloop.yaml"

# grunt-contrib-watch's default debounceDelay
DEFAULT_DEBOUNCE_MS = 500

STEP_KEYS = {
    "name", "command", "args", "cwd", "fail_on_error", "output_visible",
    "max_output_bytes", "timeout_ms", "shell", "env",
}


def _require_bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{where} must be true or false, got {value!r}")
    return value


def _require_int(value: Any, where: str) -> int:
    # bool is an int subclass; 'true' is never a valid byte count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where} must be an integer, got {value!r}")
    return value


def _pattern_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list of glob patterns")
    patterns = []
    for pattern in value:
        if not isinstance(pattern, str) or not pattern.strip():
            raise ConfigError(f"{where}: invalid glob pattern {pattern!r}")
        try:
            re.compile(translate_glob(pattern.lstrip("!")))
        except re.error as e:
            raise ConfigError(f"{where}: unreadable glob pattern {pattern!r}: {e}")
        patterns.append(pattern)
    return patterns


class WatchConfig:
    """Configuration for the file watcher."""

    def __init__(self, data: Dict[str, Any], base_dir: Path):
        if not isinstance(data, dict):
            raise ConfigError("'watch' must be a mapping")

        self.root = (base_dir / data.get("root", ".")).resolve()

        include = _pattern_list(data.get("include"), "watch.include")
        exclude = _pattern_list(data.get("exclude"), "watch.exclude")

        # '!pattern' in include means exclude
        self.include = [p for p in include if not p.startswith("!")]
        self.exclude = exclude + [p[1:] for p in include if p.startswith("!")]

        self.debounce_ms = _require_int(data.get("debounce_ms", DEFAULT_DEBOUNCE_MS), "watch.debounce_ms")

    def validate(self) -> None:
        """Validate watch configuration."""
        if not self.include:
            raise ConfigError("watch.include must contain at least one pattern")
        if self.debounce_ms < 0:
            raise ConfigError(f"watch.debounce_ms must be >= 0, got {self.debounce_ms}")
        if not self.root.is_dir():
            raise ConfigError(f"watch.root does not exist: {self.root}")

    def __repr__(self) -> str:
        return f"WatchConfig(root={self.root}, include={self.include}, exclude={self.exclude})"


def build_step(data: Any, index: int, base_dir: Path) -> Step:
    """Build an immutable Step from one raw 'steps' entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"steps[{index}] must be a mapping")

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ConfigError(f"steps[{index}]: missing 'name'")

    unknown = set(data) - STEP_KEYS
    if unknown:
        raise ConfigError(f"Step '{name}': unknown keys {sorted(unknown)}")

    command = data.get("command")
    if not isinstance(command, str):
        raise ConfigError(f"Step '{name}': 'command' must be a string")

    args = data.get("args", [])
    if not isinstance(args, list):
        raise ConfigError(f"Step '{name}': 'args' must be a list")

    cwd = data.get("cwd")
    env = data.get("env", {})
    if not isinstance(env, dict):
        raise ConfigError(f"Step '{name}': 'env' must be a mapping")

    timeout_ms = data.get("timeout_ms")
    if timeout_ms is not None:
        timeout_ms = _require_int(timeout_ms, f"Step '{name}': timeout_ms")

    return Step(
        name=name,
        command=command,
        args=tuple(str(a) for a in args),
        cwd=(base_dir / cwd).resolve() if cwd else base_dir,
        fail_on_error=_require_bool(data.get("fail_on_error", True), f"Step '{name}': fail_on_error"),
        output_visible=_require_bool(data.get("output_visible", True), f"Step '{name}': output_visible"),
        max_output_bytes=_require_int(
            data.get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES), f"Step '{name}': max_output_bytes"
        ),
        timeout_ms=timeout_ms,
        shell=_require_bool(data.get("shell", False), f"Step '{name}': shell"),
        env={str(k): str(v) for k, v in env.items()},
    )


class LoopConfig:
    """Complete feedback loop configuration."""

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self.base_dir = self.config_path.resolve().parent
        self.raw_config = self._load_yaml()

        # Loop metadata
        loop = self.raw_config.get("loop", {}) or {}
        self.name = loop.get("name", "feedloop")

        self.watch = WatchConfig(self.raw_config.get("watch", {}) or {}, self.base_dir)

        self.run_on_startup = _require_bool(self.raw_config.get("run_on_startup", True), "run_on_startup")
        self.clear_console = _require_bool(self.raw_config.get("clear_console", True), "clear_console")

        state_file = self.raw_config.get("state_file", ".feedloop/state.json")
        self.state_file: Optional[Path] = self.base_dir / state_file if state_file else None

        # Steps
        steps_data = self.raw_config.get("steps")
        if not isinstance(steps_data, list) or not steps_data:
            raise ConfigError("'steps' must be a non-empty list")
        self.steps: List[Step] = [
            build_step(step_data, i, self.base_dir) for i, step_data in enumerate(steps_data)
        ]

        # Logging
        self.logging = self.raw_config.get("logging", {}) or {}

    def _load_yaml(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {self.config_path}: {e}")

        if not config:
            raise ConfigError("Configuration file is empty")
        if not isinstance(config, dict):
            raise ConfigError("Configuration file must contain a mapping")
        return config

    def get_step(self, name: str) -> Optional[Step]:
        """Get step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", ".feedloop/logs/feedloop-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return self.base_dir / log_output

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        if not self.name:
            raise ConfigError("Loop name is required")

        self.watch.validate()

        names = [step.name for step in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate step names: {duplicates}")

        for step in self.steps:
            if step.cwd is not None and not step.cwd.is_dir():
                raise ConfigError(f"Step '{step.name}': cwd does not exist: {step.cwd}")

        if self.get_log_format() not in ("pretty", "structured"):
            raise ConfigError(f"logging.format must be 'pretty' or 'structured', got {self.get_log_format()!r}")

        level = self.get_log_level()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"logging.level is not a valid level: {level}")

    def __repr__(self) -> str:
        return f"LoopConfig(name={self.name}, steps={len(self.steps)})"


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """--config wins, then $FEEDLOOP_CONFIG, then ./feedloop.yaml."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def load_config(config_path: Optional[Path] = None) -> LoopConfig:
    """
    Load and validate the loop configuration from a YAML file.

    Args:
        config_path: Path to config file. Defaults to $FEEDLOOP_CONFIG,
            then ./feedloop.yaml

    Returns:
        Validated LoopConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    config = LoopConfig(resolve_config_path(config_path))
    config.validate()
    return config

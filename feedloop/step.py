"""
Step schema - one external command in the loop pipeline.

A Step is immutable once the pipeline is constructed. Its failure policy
(fail_on_error) decides whether a failed run of the command stops the
pipeline or is merely logged.
"""

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError, StepExecutionError

# 4000 KiB, enough for a verbose go test run
DEFAULT_MAX_OUTPUT_BYTES = 4000 * 1024

REASON_OK = "ok"
REASON_EXIT = "exit"
REASON_SPAWN_ERROR = "spawn_error"
REASON_TIMEOUT = "timeout"


@dataclass(frozen=True)
class Step:
    """
    A step definition within a pipeline.

    Attributes:
        name: Unique identifier for the step within the pipeline
        command: Executable (optionally followed by arguments), or a full
            shell string when shell is true
        args: Extra arguments appended after the command
        cwd: Working directory for the child process (None = inherit)
        fail_on_error: If true, a failure stops the pipeline
        output_visible: If true, child output is streamed to the terminal
        max_output_bytes: Cap on retained output bytes
        timeout_ms: Optional step-level timeout in milliseconds
        shell: Run command through the system shell
        env: Extra environment variables for the child
    """
    name: str
    command: str
    args: tuple[str, ...] = field(default_factory=tuple)
    cwd: Optional[Path] = None
    fail_on_error: bool = True
    output_visible: bool = True
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    timeout_ms: Optional[int] = None
    shell: bool = False
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ConfigError("Step name is required")
        if not self.command or not self.command.strip():
            raise ConfigError(f"Step '{self.name}': command is required")
        if self.max_output_bytes <= 0:
            raise ConfigError(
                f"Step '{self.name}': max_output_bytes must be positive, got {self.max_output_bytes}"
            )
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ConfigError(
                f"Step '{self.name}': timeout_ms must be positive, got {self.timeout_ms}"
            )
        if self.shell and self.args:
            raise ConfigError(f"Step '{self.name}': args cannot be combined with shell: true")

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout_ms is None:
            return None
        return self.timeout_ms / 1000.0

    def argv(self) -> list[str]:
        """Build the argv for a non-shell step."""
        return shlex.split(self.command) + list(self.args)

    def display_command(self) -> str:
        """Human-readable command line for logs and reports."""
        if self.shell:
            return self.command
        return shlex.join(self.argv())

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            **({"args": list(self.args)} if self.args else {}),
            **({"cwd": str(self.cwd)} if self.cwd else {}),
            "fail_on_error": self.fail_on_error,
            "output_visible": self.output_visible,
            "max_output_bytes": self.max_output_bytes,
            **({"timeout_ms": self.timeout_ms} if self.timeout_ms is not None else {}),
            **({"shell": True} if self.shell else {}),
        }


@dataclass
class StepStatus:
    """Outcome of one executed step."""

    step: Step
    exit_code: Optional[int]
    reason: str = REASON_OK
    truncated: bool = False
    fatal: bool = False
    output: bytes = b""
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.reason != REASON_OK

    @property
    def tolerated(self) -> bool:
        return self.failed and not self.fatal

    def raise_for_status(self) -> None:
        """Raise StepExecutionError if the step failed."""
        if self.failed:
            raise StepExecutionError(self.step.name, self.reason, self.exit_code, self.error)

    def describe(self) -> str:
        """Short status text: 'ok', 'exit 2', 'timeout', ..."""
        if self.reason == REASON_OK:
            return "ok"
        if self.reason == REASON_EXIT:
            return f"exit {self.exit_code}"
        if self.reason == REASON_TIMEOUT:
            return "timeout"
        return "spawn error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.name,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "truncated": self.truncated,
            "fatal": self.fatal,
            "output_bytes": len(self.output),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }

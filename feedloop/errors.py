"""
Error classes for feedloop.

Only ConfigError is fatal to process startup. Everything else is contained
within a single run or within the watcher:
- ConfigError: Broken loop definition, raised before any watching begins
- WatchError: File watching failed; logged and re-established with backoff
- StepExecutionError: A step exited non-zero, could not be spawned, or timed out

Captured output exceeding a step's cap is not an error: it is truncated and
flagged on the step status.
"""


class FeedloopError(Exception):
    """Base exception for feedloop."""
    pass


class ConfigError(FeedloopError):
    """
    Configuration validation error.

    Examples:
    - Missing, empty or unparseable config file
    - Empty step list, duplicate step names
    - Non-positive max_output_bytes or timeout_ms
    - Glob pattern that cannot be compiled
    """
    pass


class WatchError(FeedloopError):
    """
    Watcher subsystem failure.

    Examples:
    - inotify watch limit reached
    - Watch root removed while observing
    - Observer thread died unexpectedly

    Never fatal: the watcher logs it and restarts after a backoff.
    """
    pass


class StepExecutionError(FeedloopError):
    """
    A pipeline step failed.

    Whether it stops the run depends on the step's fail_on_error flag.
    """

    def __init__(self, step_name: str, reason: str, exit_code: int | None = None, detail: str | None = None):
        self.step_name = step_name
        self.reason = reason
        self.exit_code = exit_code
        self.detail = detail
        super().__init__(self._format())

    def _format(self) -> str:
        if self.reason == "timeout":
            message = f"{self.step_name} timed out"
        elif self.reason == "spawn_error":
            message = f"{self.step_name} could not be started"
        else:
            message = f"{self.step_name} exited with code {self.exit_code}"
        if self.detail:
            message += f": {self.detail}"
        return message

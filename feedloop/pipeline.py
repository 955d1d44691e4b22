"""Pipeline runner: sequential execution of steps via the Executor.

A pipeline is the ordered list of Steps declared in feedloop.yaml. Steps run
strictly one at a time in declaration order because later steps rely on the
side effects of earlier ones (the test run assumes stale state was cleared).

Failure policy per step:
    fail_on_error: true   -> failure is fatal; remaining steps are skipped
    fail_on_error: false  -> failure is tolerated; logged and the run continues

There is no retry inside a run. The next trigger is the retry.
"""

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import ConfigError, StepExecutionError
from .executor import Executor
from .step import Step, StepStatus

logger = logging.getLogger(__name__)

# One-shot exit code when the fatal step has no usable exit code
GENERIC_FAILURE_EXIT_CODE = 1


@dataclass(frozen=True)
class Trigger:
    """A coalesced "relevant files changed" signal."""
    fired_at: float = field(default_factory=time.time)
    event_count: int = 1
    source: str = "watch"


@dataclass
class RunResult:
    """Result of executing a pipeline.

    - steps: status of every step actually executed, in order
    - overall_success: true if no fatal failure occurred
    - stopped_early: true if a fatal failure skipped the remaining steps
    """
    steps: list[StepStatus] = field(default_factory=list)
    overall_success: bool = True
    stopped_early: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: float = 0.0
    run_number: int = 0
    trigger: Trigger | None = None

    @property
    def first_fatal(self) -> StepStatus | None:
        for status in self.steps:
            if status.fatal:
                return status
        return None

    @property
    def tolerated(self) -> list[StepStatus]:
        return [s for s in self.steps if s.tolerated]

    @property
    def exit_code(self) -> int:
        """Process exit code for one-shot mode."""
        if self.overall_success:
            return 0
        fatal = self.first_fatal
        if fatal is not None and fatal.exit_code is not None and fatal.exit_code > 0 and fatal.reason == "exit":
            return fatal.exit_code
        return GENERIC_FAILURE_EXIT_CODE

    def to_dict(self) -> dict[str, Any]:
        result = {
            "run_number": self.run_number,
            "overall_success": self.overall_success,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.stopped_early:
            result["stopped_early"] = True
        return result


class Pipeline:
    """
    Ordered, immutable sequence of Steps.

    Args:
        steps: Steps in execution order
        executor: Executor used to run each step (default: Executor())
        progress_callback: Optional callback(event, **kwargs) for progress updates.
            Events: 'step_start', 'step_ok', 'step_tolerated', 'step_fail'
    """

    def __init__(
        self,
        steps: Sequence[Step],
        executor: Executor | None = None,
        progress_callback: Callable[..., Any] | None = None,
    ):
        if not steps:
            raise ConfigError("Pipeline needs at least one step")
        names = [s.name for s in steps]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ConfigError(f"Duplicate step names: {duplicates}")

        self.steps: tuple[Step, ...] = tuple(steps)
        self.executor = executor or Executor()
        self.progress_callback = progress_callback

    def __len__(self) -> int:
        return len(self.steps)

    def _emit(self, event: str, **kwargs) -> None:
        if self.progress_callback:
            self.progress_callback(event, **kwargs)

    def execute(self, trigger: Trigger | None = None, run_number: int = 0) -> RunResult:
        """Execute all steps in order, stopping at the first fatal failure.

        Args:
            trigger: The trigger that caused this run (None for startup/one-shot)
            run_number: Sequence number used in logs and reports

        Returns:
            RunResult with one status entry per executed step
        """
        logger.info(
            f"Starting run #{run_number} ({len(self.steps)} steps)",
            extra={"event": "run_started", "metadata": {"run_number": run_number}},
        )

        start_time = time.time()
        result = RunResult(
            started_at=datetime.now(timezone.utc),
            run_number=run_number,
            trigger=trigger,
        )

        for index, step in enumerate(self.steps):
            self._emit("step_start", step=step)
            logger.info(f"  Running: {step.name}", extra={"step": step.name, "event": "step_started"})

            exec_result = self.executor.run(step)
            status = StepStatus(
                step=step,
                exit_code=exec_result.exit_code,
                reason=exec_result.reason,
                truncated=exec_result.truncated,
                output=exec_result.output,
                duration_seconds=exec_result.duration_seconds,
                error=exec_result.spawn_error,
            )
            status.fatal = status.failed and step.fail_on_error
            result.steps.append(status)

            if not status.failed:
                logger.info(
                    f"    ok {step.name} ({int(status.duration_seconds * 1000)}ms)",
                    extra={"step": step.name, "event": "step_ok"},
                )
                self._emit("step_ok", status=status)
                continue

            failure = StepExecutionError(step.name, status.reason, status.exit_code, status.error)
            if status.fatal:
                logger.error(
                    f"    FAIL {failure}",
                    extra={"step": step.name, "event": "step_failed", "metadata": {"reason": status.reason}},
                )
                self._emit("step_fail", status=status)
                skipped = len(self.steps) - index - 1
                logger.error(f"  Step {step.name} failed, stopping pipeline ({skipped} step(s) skipped)")
                result.stopped_early = True
                result.overall_success = False
                break

            logger.warning(
                f"    tolerated {failure}",
                extra={"step": step.name, "event": "step_tolerated", "metadata": {"reason": status.reason}},
            )
            self._emit("step_tolerated", status=status)

        result.ended_at = datetime.now(timezone.utc)
        result.duration_seconds = time.time() - start_time

        logger.info(
            f"Run #{run_number}: success={result.overall_success}, "
            f"steps={len(result.steps)}/{len(self.steps)}, "
            f"duration={int(result.duration_seconds * 1000)}ms",
            extra={"event": "run_completed", "metadata": result.to_dict()},
        )

        return result

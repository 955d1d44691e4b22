"""
Run orchestration for feedloop.

The Orchestrator owns the run-state machine and is its only writer:

    IDLE          --trigger-->        RUNNING        (start a run)
    RUNNING       --trigger-->        PENDING_RERUN  (never preempt)
    PENDING_RERUN --trigger-->        PENDING_RERUN  (boolean, not a counter)
    RUNNING       --run finished-->   IDLE
    PENDING_RERUN --run finished-->   RUNNING        (report, then rerun once)

Any number of triggers arriving during a run collapse into a single rerun.
"""

import json
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .console import ConsoleController
from .errors import FeedloopError
from .pipeline import Pipeline, RunResult, Trigger

logger = logging.getLogger(__name__)

# Keys of a saved StepStatus that `feedloop status` reads
STEP_STATE_KEYS = frozenset({"step", "reason", "fatal", "exit_code"})


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PENDING_RERUN = "pending_rerun"


class Orchestrator:
    """
    Coalesces triggers into pipeline runs, at most one in flight.

    Args:
        pipeline: Pipeline to run on each trigger
        console: Optional ConsoleController to prepare/report runs
        on_result: Optional callback(RunResult) after every run
        state_file: Optional path the last RunResult is saved to
    """

    def __init__(
        self,
        pipeline: Pipeline,
        console: Optional[ConsoleController] = None,
        on_result: Optional[Callable[[RunResult], Any]] = None,
        state_file: Optional[Path] = None,
    ):
        self.pipeline = pipeline
        self.console = console
        self.on_result = on_result
        self.state_file = state_file
        self.last_result: Optional[RunResult] = None

        self._lock = threading.Lock()
        self._state = RunState.IDLE
        self._idle = threading.Event()
        self._idle.set()
        self._run_count = 0
        self._worker: Optional[threading.Thread] = None

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def run_count(self) -> int:
        with self._lock:
            return self._run_count

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is in flight or owed. Returns False on timeout."""
        return self._idle.wait(timeout)

    def trigger(self, trigger: Optional[Trigger] = None) -> RunState:
        """
        Signal that relevant files changed.

        Never blocks on a running pipeline.

        Returns:
            The state after handling the trigger
        """
        with self._lock:
            start = self._state is RunState.IDLE
            if start:
                self._state = RunState.RUNNING
                self._idle.clear()
            elif self._state is RunState.RUNNING:
                self._state = RunState.PENDING_RERUN
                logger.info("Change detected during run, rerun scheduled", extra={"event": "rerun_pending"})
            new_state = self._state

        if start:
            self._worker = threading.Thread(
                target=self._work,
                args=(trigger,),
                name="feedloop-pipeline",
                daemon=True,
            )
            self._worker.start()
        return new_state

    def run_once(self, trigger: Optional[Trigger] = None) -> RunResult:
        """
        Run the pipeline synchronously in the calling thread (one-shot mode).

        Raises:
            FeedloopError: If a run is already in flight
        """
        with self._lock:
            if self._state is not RunState.IDLE:
                raise FeedloopError(f"Cannot start a run while {self._state.value}")
            self._state = RunState.RUNNING
            self._idle.clear()
        result = self._work(trigger or Trigger(source="once", event_count=0))
        if result is None:
            raise FeedloopError("Run crashed before producing a result")
        return result

    def watch(self, watcher, run_on_startup: bool = True) -> None:
        """
        Optionally run once, then rerun on every Trigger from the watcher.

        Returns only when the watcher's trigger sequence ends; Ctrl-C
        surfaces as KeyboardInterrupt after the watch is shut down.
        """
        if run_on_startup:
            self.trigger(Trigger(source="startup", event_count=0))

        if self.console:
            self.console.waiting(str(watcher.root))

        triggers = watcher.triggers()
        try:
            for trigger in triggers:
                logger.debug(
                    f"Trigger ({trigger.event_count} change(s))",
                    extra={"event": "trigger", "metadata": {"event_count": trigger.event_count}},
                )
                self.trigger(trigger)
        finally:
            triggers.close()

    def _work(self, trigger: Optional[Trigger]) -> Optional[RunResult]:
        """Run until no rerun is owed; returns the last RunResult."""
        result = None
        while True:
            try:
                result = self._run(trigger)
            except Exception as e:
                # Keep the state machine consistent; the next trigger retries
                logger.error(
                    f"Run crashed: {e}",
                    extra={"event": "run_exception", "metadata": {"exception": str(e)}},
                    exc_info=True,
                )

            with self._lock:
                if self._state is RunState.PENDING_RERUN:
                    # Cleared before the rerun starts so a trigger during it re-arms the flag
                    self._state = RunState.RUNNING
                    trigger = Trigger(source="coalesced")
                    continue
                self._state = RunState.IDLE
                self._idle.set()
                return result

    def _run(self, trigger: Optional[Trigger]) -> RunResult:
        with self._lock:
            self._run_count += 1
            run_number = self._run_count

        if self.console:
            self.console.prepare(run_number)

        result = self.pipeline.execute(trigger=trigger, run_number=run_number)
        self._report(result)
        return result

    def _report(self, result: RunResult) -> None:
        self.last_result = result
        if self.console:
            self.console.report(result)
        if self.state_file is not None:
            save_state(self.state_file, result)
        if self.on_result:
            self.on_result(result)


def save_state(state_file: Path, result: RunResult) -> None:
    """
    Save the last run result to disk.

    Args:
        state_file: Destination JSON file
        result: Run result to save
    """
    try:
        state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(state_file, "w") as f:
            json.dump(result.to_dict(), f, indent=2)
        logger.debug(
            f"Saved run state to {state_file}",
            extra={"event": "state_saved", "metadata": {"file": str(state_file)}},
        )
    except OSError as e:
        logger.warning(
            f"Could not save run state: {e}",
            extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
        )


def load_state(state_file: Path) -> Optional[dict]:
    """
    Load the last saved run result.

    Returns:
        The saved result dict, or None if there is no previous run or the
        file is not a saved RunResult
    """
    if not state_file.exists():
        return None

    try:
        with open(state_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not load run state: {e}")
        return None

    if not _is_saved_result(data):
        logger.warning(f"Ignoring malformed run state in {state_file}")
        return None
    return data


def _is_saved_result(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if not isinstance(data.get("run_number"), int) or not isinstance(data.get("overall_success"), bool):
        return False
    steps = data.get("steps", [])
    if not isinstance(steps, list):
        return False
    return all(
        isinstance(step, dict) and STEP_STATE_KEYS <= step.keys()
        for step in steps
    )

"""Tests for sequential pipeline execution and step failure policy.

Tests cover:
- Declaration-order execution
- Tolerated failures (fail_on_error: false) never stop the run
- Fatal failures skip the remaining steps
- One-shot exit code derivation
- The cleanup -> test -> info scenario with real processes
"""

from unittest.mock import MagicMock

import pytest

from feedloop.errors import ConfigError, StepExecutionError
from feedloop.executor import ExecResult, Executor
from feedloop.pipeline import GENERIC_FAILURE_EXIT_CODE, Pipeline, RunResult, Trigger
from feedloop.step import Step, StepStatus


def fake_executor(results: dict) -> MagicMock:
    """Executor double returning canned ExecResults keyed by step name."""
    executor = MagicMock(spec=Executor)
    executor.run.side_effect = lambda step: results[step.name]
    return executor


class TestConstruction:
    """Pipelines are validated once at construction."""

    def test_empty_pipeline_rejected(self):
        with pytest.raises(ConfigError):
            Pipeline([])

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigError, match="Duplicate"):
            Pipeline([Step(name="a", command="true"), Step(name="a", command="false")])

    def test_steps_are_immutable_tuple(self):
        pipeline = Pipeline([Step(name="a", command="true")])
        assert isinstance(pipeline.steps, tuple)
        assert len(pipeline) == 1


class TestFailurePolicy:
    """fail_on_error decides fatal vs tolerated."""

    def test_all_steps_succeed(self):
        steps = [Step(name="a", command="a"), Step(name="b", command="b")]
        executor = fake_executor({"a": ExecResult(exit_code=0), "b": ExecResult(exit_code=0)})

        result = Pipeline(steps, executor=executor).execute()

        assert result.overall_success is True
        assert result.stopped_early is False
        assert [s.step.name for s in result.steps] == ["a", "b"]
        assert result.exit_code == 0

    def test_tolerated_failure_continues(self):
        steps = [
            Step(name="cleanup", command="rm statefile", fail_on_error=False),
            Step(name="test", command="run_tests"),
        ]
        executor = fake_executor({"cleanup": ExecResult(exit_code=1), "test": ExecResult(exit_code=0)})

        result = Pipeline(steps, executor=executor).execute()

        assert result.overall_success is True
        assert result.stopped_early is False
        cleanup = result.steps[0]
        assert cleanup.failed and cleanup.tolerated and not cleanup.fatal
        assert result.tolerated == [cleanup]

    @pytest.mark.parametrize("failure", [
        ExecResult(exit_code=None, spawn_error="No such file or directory"),
        ExecResult(exit_code=-15, timed_out=True),
    ])
    def test_spawn_error_and_timeout_are_tolerable(self, failure):
        steps = [Step(name="cleanup", command="rm statefile", fail_on_error=False), Step(name="test", command="t")]
        executor = fake_executor({"cleanup": failure, "test": ExecResult(exit_code=0)})

        result = Pipeline(steps, executor=executor).execute()

        assert result.overall_success is True
        assert len(result.steps) == 2

    def test_fatal_failure_skips_remaining(self):
        steps = [Step(name="a", command="a"), Step(name="b", command="b"), Step(name="c", command="c")]
        executor = fake_executor({"a": ExecResult(exit_code=0), "b": ExecResult(exit_code=7)})

        result = Pipeline(steps, executor=executor).execute()

        assert result.overall_success is False
        assert result.stopped_early is True
        assert [s.step.name for s in result.steps] == ["a", "b"]
        assert result.first_fatal.step.name == "b"
        assert result.exit_code == 7
        assert executor.run.call_count == 2

    def test_fatal_failure_on_last_step(self):
        steps = [Step(name="a", command="a")]
        executor = fake_executor({"a": ExecResult(exit_code=2)})

        result = Pipeline(steps, executor=executor).execute()

        assert result.overall_success is False
        assert result.stopped_early is True

    @pytest.mark.parametrize("failure", [
        ExecResult(exit_code=None, spawn_error="No such file or directory"),
        ExecResult(exit_code=-15, timed_out=True),
        ExecResult(exit_code=-9),
    ])
    def test_exit_code_falls_back_to_generic(self, failure):
        executor = fake_executor({"a": failure})
        result = Pipeline([Step(name="a", command="a")], executor=executor).execute()
        assert result.exit_code == GENERIC_FAILURE_EXIT_CODE

    def test_truncation_is_not_a_failure(self):
        executor = fake_executor({"a": ExecResult(exit_code=0, output=b"x" * 10, truncated=True)})
        result = Pipeline([Step(name="a", command="a", max_output_bytes=10)], executor=executor).execute()
        assert result.overall_success is True
        assert result.steps[0].truncated is True


class TestRunMetadata:
    """Run bookkeeping and progress events."""

    def test_progress_events(self):
        steps = [
            Step(name="cleanup", command="c", fail_on_error=False),
            Step(name="test", command="t"),
            Step(name="info", command="i"),
        ]
        executor = fake_executor({
            "cleanup": ExecResult(exit_code=1),
            "test": ExecResult(exit_code=0),
            "info": ExecResult(exit_code=3),
        })
        events = []

        Pipeline(steps, executor=executor, progress_callback=lambda event, **kw: events.append(event)).execute()

        assert events == [
            "step_start", "step_tolerated",
            "step_start", "step_ok",
            "step_start", "step_fail",
        ]

    def test_trigger_and_run_number_recorded(self):
        trigger = Trigger(event_count=3)
        executor = fake_executor({"a": ExecResult(exit_code=0)})

        result = Pipeline([Step(name="a", command="a")], executor=executor).execute(trigger=trigger, run_number=4)

        assert result.trigger is trigger
        assert result.run_number == 4
        assert result.started_at <= result.ended_at

    def test_to_dict(self):
        executor = fake_executor({"a": ExecResult(exit_code=5, output=b"FAIL")})
        data = Pipeline([Step(name="a", command="a")], executor=executor).execute(run_number=1).to_dict()

        assert data["overall_success"] is False
        assert data["stopped_early"] is True
        assert data["steps"] == [{
            "step": "a",
            "exit_code": 5,
            "reason": "exit",
            "truncated": False,
            "fatal": True,
            "output_bytes": 4,
            "duration_seconds": 0.0,
            "error": None,
        }]

    def test_raise_for_status(self):
        status = StepStatus(step=Step(name="go_test", command="./test.sh"), exit_code=2, reason="exit")
        with pytest.raises(StepExecutionError, match="go_test exited with code 2"):
            status.raise_for_status()

    def test_empty_run_result_defaults(self):
        result = RunResult()
        assert result.overall_success is True
        assert result.first_fatal is None
        assert result.exit_code == 0


class TestCleanupTestInfoScenario:
    """cleanup (tolerated) -> test (fatal) -> info, with real processes."""

    @pytest.fixture
    def steps(self, tmp_path, python_step):
        marker = tmp_path / "info_ran"

        def build(test_exit_code: int):
            return [
                Step(
                    name="cleanup",
                    command="rm statefile",
                    cwd=tmp_path,
                    fail_on_error=False,
                    output_visible=False,
                ),
                python_step("test", f"import sys; sys.exit({test_exit_code})", output_visible=False),
                python_step(
                    "info",
                    f"open({str(marker)!r}, 'w').write('ran')",
                    output_visible=False,
                ),
            ]

        return build, marker

    def test_missing_statefile_is_tolerated(self, steps):
        build, marker = steps

        result = Pipeline(build(0)).execute()

        assert result.steps[0].tolerated
        assert result.overall_success is True
        assert result.stopped_early is False
        assert [s.step.name for s in result.steps] == ["cleanup", "test", "info"]
        assert marker.exists()

    def test_failing_tests_skip_info(self, steps):
        build, marker = steps

        result = Pipeline(build(3)).execute()

        assert [s.step.name for s in result.steps] == ["cleanup", "test"]
        assert result.overall_success is False
        assert result.stopped_early is True
        assert result.exit_code == 3
        assert not marker.exists()

    def test_existing_statefile_is_removed(self, steps, tmp_path):
        build, _ = steps
        statefile = tmp_path / "statefile"
        statefile.write_text("stale")

        result = Pipeline(build(0)).execute()

        assert result.steps[0].failed is False
        assert not statefile.exists()

    def test_steps_run_in_declaration_order(self, tmp_path, python_step):
        log = tmp_path / "order.log"
        steps = [
            python_step(name, f"open({str(log)!r}, 'a').write({name!r} + '\\n')", output_visible=False)
            for name in ("first", "second", "third")
        ]

        Pipeline(steps).execute()

        assert log.read_text().splitlines() == ["first", "second", "third"]

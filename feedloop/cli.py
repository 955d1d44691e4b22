"""
CLI interface for feedloop.

Provides commands: watch (default), run, validate, status, init.
"""

from pathlib import Path

import click
import yaml

from feedloop import __version__
from feedloop.config import DEFAULT_CONFIG_NAME, LoopConfig, load_config
from feedloop.console import ConsoleController
from feedloop.errors import ConfigError
from feedloop.orchestrator import Orchestrator, load_state
from feedloop.pipeline import Pipeline
from feedloop.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)
from feedloop.watcher import GlobSet, PathWatcher


STARTER_CONFIG = {
    "loop": {"name": "pinghist"},
    "watch": {
        "root": ".",
        "include": ["**/*.go", "**/*.sh", "!**/node_modules/**", "!**/.git/**"],
        "debounce_ms": 500,
    },
    "run_on_startup": True,
    "clear_console": True,
    "state_file": ".feedloop/state.json",
    "steps": [
        {
            "name": "del_db",
            "command": "rm dal/pinghist.db",
            "fail_on_error": False,
            "output_visible": False,
        },
        {
            "name": "go_test",
            "command": "./test.sh",
            "max_output_bytes": 4000 * 1024,
        },
        {
            "name": "db_info",
            "command": "./db_info.sh",
        },
    ],
    "logging": {
        "level": "INFO",
        "output": ".feedloop/logs/feedloop-{date}.log",
        "format": "pretty",
        "console": True,
    },
}


def _load(ctx) -> LoopConfig:
    """Load config and set up logging; exits 1 on ConfigError."""
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        raise SystemExit(1)

    log_level = "DEBUG" if ctx.obj.get("verbose") else config.get_log_level()
    setup_logging(
        config.get_log_file_path(),
        log_level,
        config.get_log_format(),
        config.should_log_to_console(),
    )
    return config


def _build_orchestrator(config: LoopConfig, clear: bool) -> Orchestrator:
    pipeline = Pipeline(config.steps)
    return Orchestrator(
        pipeline,
        console=ConsoleController(config.name, clear=clear),
        state_file=config.state_file,
    )


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="feedloop")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help=f"Configuration file (default: $FEEDLOOP_CONFIG or ./{DEFAULT_CONFIG_NAME})",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, verbose):
    """
    feedloop - Save, see results.

    Watches source files and reruns the step pipeline on every change.
    Without a command, runs 'feedloop watch'.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    if ctx.invoked_subcommand is None:
        ctx.invoke(watch)


@main.command()
@click.option(
    "--initial-run/--no-initial-run",
    default=None,
    help="Run the pipeline once before the first change (default: run_on_startup)",
)
@click.pass_context
def watch(ctx, initial_run):
    """
    Watch for changes and rerun the pipeline.

    Pipeline failures never stop watching. Press Ctrl-C to exit.

    Examples:

      # Watch with ./feedloop.yaml
      feedloop watch

      # Only run after the first change
      feedloop watch --no-initial-run
    """
    config = _load(ctx)
    orchestrator = _build_orchestrator(config, clear=config.clear_console)
    watcher = PathWatcher(
        config.watch.root,
        GlobSet(config.watch.include, config.watch.exclude),
        debounce_ms=config.watch.debounce_ms,
    )

    run_on_startup = config.run_on_startup if initial_run is None else initial_run
    try:
        orchestrator.watch(watcher, run_on_startup=run_on_startup)
    except KeyboardInterrupt:
        # Steps run in their own session and never see the terminal's Ctrl-C
        orchestrator.pipeline.executor.terminate_running()
        print_info("Stopped watching")


@main.command()
@click.pass_context
def run(ctx):
    """
    Run the pipeline once and exit (CI mode).

    Exit code is 0 on success, otherwise the exit code of the first
    fatal step (1 if it could not be started or timed out).

    Examples:

      feedloop run

      feedloop --config ci/feedloop.yaml run
    """
    config = _load(ctx)
    orchestrator = _build_orchestrator(config, clear=False)
    result = orchestrator.run_once()
    raise SystemExit(result.exit_code)


@main.command()
@click.pass_context
def validate(ctx):
    """Validate configuration without running anything."""
    config = _load(ctx)

    print_banner(f"{config.name}: {config.config_path}")
    print_info(f"Watch root: {config.watch.root}")
    print_info(f"Include: {', '.join(config.watch.include)}")
    if config.watch.exclude:
        print_info(f"Exclude: {', '.join(config.watch.exclude)}")
    print_info(f"Debounce: {config.watch.debounce_ms}ms")

    for index, step in enumerate(config.steps, start=1):
        policy = "fatal" if step.fail_on_error else "tolerated"
        visibility = "" if step.output_visible else ", hidden output"
        timeout = f", timeout {step.timeout_ms}ms" if step.timeout_ms else ""
        console.print(f"  {index}. [cyan]{step.name}[/cyan]: {step.display_command()} ({policy}{visibility}{timeout})")

    print_success(f"Configuration valid ({len(config.steps)} steps)")


@main.command()
@click.pass_context
def status(ctx):
    """Show the result of the last run."""
    config = _load(ctx)

    if config.state_file is None:
        print_warning("state_file is disabled in configuration")
        raise SystemExit(0)

    last_run = load_state(config.state_file)
    if not last_run:
        print_info("No previous runs found")
        raise SystemExit(0)

    status_text = "SUCCESS" if last_run["overall_success"] else "FAILED"
    click.echo(f"Last Run: #{last_run['run_number']} at {last_run.get('started_at')}")
    click.echo(f"Status: {status_text}")
    click.echo(f"Duration: {format_duration(last_run.get('duration_seconds', 0))}")
    for step in last_run.get("steps", []):
        if step["reason"] == "ok":
            outcome = "ok"
        elif step["fatal"]:
            outcome = f"FAILED ({step['reason']}, exit {step['exit_code']})"
        else:
            outcome = f"tolerated ({step['reason']}, exit {step['exit_code']})"
        click.echo(f"  {step['step']}: {outcome}")


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.option(
    "--path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_NAME),
    show_default=True,
    help="Where to write the configuration",
)
def init(force: bool, path: Path):
    """Write a starter feedloop.yaml."""
    if path.exists() and not force:
        click.echo(f"Config already exists at {path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(STARTER_CONFIG, sort_keys=False))
    click.echo(f"Initialized feedloop config at {path}")
    click.echo("Edit the steps to match your project's test and diagnostics scripts.")


if __name__ == "__main__":
    main()

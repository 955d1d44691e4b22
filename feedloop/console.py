"""Console display: clear before each run, summarize after it."""

from typing import Optional

from rich.console import Console
from rich.table import Table

from .pipeline import RunResult
from .utils import console as default_console
from .utils import format_bytes, format_duration


class ConsoleController:
    """
    Prepares the terminal before a run and reports its result.

    Purely cosmetic: nothing here affects run outcomes.
    """

    def __init__(self, name: str = "feedloop", clear: bool = True, console: Optional[Console] = None):
        self.name = name
        self.clear = clear
        self.console = console or default_console

    def prepare(self, run_number: int) -> None:
        # Never clear a log file or a CI transcript
        if self.clear and self.console.is_terminal:
            self.console.clear()
        self.console.rule(f"[bold blue]{self.name} · run #{run_number}[/bold blue]")

    def report(self, result: RunResult) -> None:
        table = Table(title=f"Run #{result.run_number}", title_justify="left")
        table.add_column("Step", style="cyan")
        table.add_column("Status")
        table.add_column("Output", style="dim", justify="right")
        table.add_column("Duration", style="dim", justify="right")

        for status in result.steps:
            if not status.failed:
                text = "[green]ok[/green]"
            elif status.fatal:
                text = f"[bold red]{status.describe()}[/bold red]"
            else:
                text = f"[yellow]{status.describe()} (tolerated)[/yellow]"
            output = format_bytes(len(status.output))
            if status.truncated:
                output += " [yellow](truncated)[/yellow]"
            table.add_row(status.step.name, text, output, format_duration(status.duration_seconds))

        self.console.print(table)

        if result.overall_success:
            self.console.print(
                f"[bold green]✓[/bold green] Run #{result.run_number} passed in "
                f"{format_duration(result.duration_seconds)}"
            )
        else:
            fatal = result.first_fatal
            where = f" at {fatal.step.name}" if fatal else ""
            self.console.print(
                f"[bold red]✗[/bold red] Run #{result.run_number} failed{where} in "
                f"{format_duration(result.duration_seconds)}"
            )
            if fatal is not None and fatal.error:
                self.console.print(f"  [red]{fatal.error}[/red]")

    def waiting(self, root: str) -> None:
        self.console.print(f"[bold cyan]ℹ[/bold cyan] Waiting for changes in {root} (Ctrl-C to stop)")

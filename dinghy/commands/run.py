import sys

from rich.table import Table

from dinghy.arguments import create_run_request
from dinghy.logger import get_console
from dinghy.src.core.errors import DinghyError
from dinghy.src.core.models import SessionOutcome, SessionResult, StreamKind
from dinghy.src.core.run_orchestrator import RunOrchestrator, describe_failure, exit_code_for
from dinghy.src.utils.config_loader import load_settings

OUTCOME_STYLES = {
    SessionOutcome.COMPLETED: "green",
    SessionOutcome.FAILED: "red",
    SessionOutcome.TIMED_OUT: "yellow",
    SessionOutcome.DISCONNECTED: "magenta",
}


def print_output(result: SessionResult, with_header: bool) -> None:
    """Write captured output to our own stdout/stderr"""
    if with_header:
        sys.stdout.write(f"===== {result.device} =====\n")
    for chunk in result.output:
        stream = sys.stderr if chunk.stream is StreamKind.STDERR else sys.stdout
        stream.write(chunk.data)
    sys.stdout.flush()


def print_summary(results) -> None:
    console = get_console()
    table = Table(title="Device sessions")
    table.add_column("Device")
    table.add_column("Outcome")
    table.add_column("Exit code")
    table.add_column("Details")

    for result in results:
        style = OUTCOME_STYLES[result.outcome]
        table.add_row(
            str(result.device),
            f"[{style}]{result.outcome.value}[/]",
            "" if result.exit_code is None else str(result.exit_code),
            describe_failure(result) or "",
        )
    console.print(table)


def main(parsed_args) -> int:
    console = get_console()

    if not parsed_args.executable.exists():
        console.print(f"[red]Error:[/] Executable not found: {parsed_args.executable}")
        return 1

    try:
        settings = load_settings()
        request = create_run_request(parsed_args)
        results = RunOrchestrator(settings).run(request)
    except DinghyError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
        return 130

    for result in results:
        print_output(result, with_header=len(results) > 1)
    print_summary(results)
    return exit_code_for(results)


def run_run_command(args):
    """Entry point for the run command from CLI"""
    return main(parsed_args=args)

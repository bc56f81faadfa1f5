import argparse
import sys
from pathlib import Path
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter
from dinghy.arguments import add_run_arguments
from dinghy.src.constants.cli_constants import (
    __version__,
    get_banner_text,
    APP_DESCRIPTION,
)


class DinghyHelpFormatter(RichHelpFormatter):
    """Custom formatter for the dinghy CLI that enhances the output with rich styling."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)
        self.console = Console(
            theme=Theme(
                {
                    "command": "bold cyan",
                    "argument": "green",
                    "option": "yellow",
                    "version": "blue",
                    "title": "bold magenta",
                }
            )
        )

    def start_section(self, heading):
        # Make section headings more prominent
        heading_text = Text(heading, style="title")
        super().start_section(str(heading_text))


def display_banner():
    """Display a banner for dinghy."""
    console = Console()
    version_info = Text(f"v{__version__}", style="blue")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(get_banner_text(), "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dinghy",
        description=f"dinghy: {APP_DESCRIPTION}",
        formatter_class=DinghyHelpFormatter,
        add_help=True,
    )

    parser.add_argument("--version", action="version", version=f"dinghy {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Package, install and run an executable on a device",
        formatter_class=DinghyHelpFormatter,
        description="Sign (for iOS), install and run an executable on attached devices and report its output.",
    )
    add_run_arguments(run_parser)

    subparsers.add_parser(
        "devices",
        help="List attached devices",
        formatter_class=DinghyHelpFormatter,
    )

    subparsers.add_parser(
        "identities",
        help="List code signing identities",
        formatter_class=DinghyHelpFormatter,
    )

    profiles_parser = subparsers.add_parser(
        "profiles",
        help="List provisioning profiles",
        formatter_class=DinghyHelpFormatter,
        description="List provisioning profiles, or rank signing candidates for an app id and device.",
    )
    profiles_parser.add_argument(
        "--directory", type=Path, help="Profile directory [default: from config]"
    )
    profiles_parser.add_argument("--app-id", dest="app_id", help="Application identifier to rank for")
    profiles_parser.add_argument("--device", help="Device identifier to rank for")

    return parser


def split_passthrough(argv):
    """Everything after the first -- goes to the executable untouched"""
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1 :]
    return argv, []


def main(argv=None):
    argv = sys.argv[1:] if argv is None else list(argv)
    argv, passthrough = split_passthrough(argv)
    # Display the banner before the help text
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    parser = create_parser()
    args = parser.parse_args(argv)
    args.args = passthrough

    if args.command == "run":
        from dinghy.commands.run import run_run_command

        return run_run_command(args)
    elif args.command == "devices":
        from dinghy.commands.devices import run_devices_command

        return run_devices_command(args)
    elif args.command == "identities":
        from dinghy.commands.identities import run_identities_command

        return run_identities_command(args)
    elif args.command == "profiles":
        from dinghy.commands.profiles import run_profiles_command

        return run_profiles_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())

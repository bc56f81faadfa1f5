import argparse
from pathlib import Path
from typing import Tuple

from dinghy.src.core.errors import ConfigError
from dinghy.src.core.run_orchestrator import RunRequest
from dinghy.src.utils.config_loader import parse_timeout


def env_pair(text: str) -> Tuple[str, str]:
    """argparse type for KEY=VALUE"""
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"environment must be KEY=VALUE, got {text!r}")
    return key, value


def timeout_arg(text: str) -> float:
    """argparse type for --timeout; 0, none and off mean no limit"""
    try:
        timeout = parse_timeout(text, "timeout")
    except ConfigError as e:
        raise argparse.ArgumentTypeError(str(e))
    return 0.0 if timeout is None else timeout


def add_run_arguments(parser):
    """Add all run-related arguments to an existing parser."""
    parser.add_argument("executable", type=Path, help="Path to the built executable to run")

    parser.add_argument(
        "--target",
        "-t",
        required=True,
        help="Target triple the executable was built for, e.g. aarch64-apple-ios",
    )

    parser.add_argument(
        "--app-id",
        dest="app_id",
        default="dinghy.test",
        help="Application identifier to package and sign under [default: dinghy.test]",
    )

    devices = parser.add_mutually_exclusive_group()
    devices.add_argument(
        "--device",
        "-d",
        help="Device identifier or name [default: first compatible device]",
    )
    devices.add_argument(
        "--all-devices",
        action="store_true",
        help="Run on every compatible attached device in parallel [default: disabled]",
    )

    parser.add_argument(
        "--timeout",
        type=timeout_arg,
        help="Seconds to wait for the process to exit, 0 for no limit [default: from config, else no limit]",
    )

    parser.add_argument(
        "--env",
        "-e",
        action="append",
        default=[],
        type=env_pair,
        metavar="KEY=VALUE",
        help="Environment variable to set for the process (repeatable)",
    )

    parser.add_argument(
        "--keep-package",
        action="store_true",
        help="Keep the signed package in the package cache [default: disabled]",
    )


def create_run_request(args) -> RunRequest:
    """Convert parsed arguments to a RunRequest"""
    process_args = list(getattr(args, "args", None) or [])
    return RunRequest(
        executable=args.executable,
        target=args.target,
        application_identifier=args.app_id,
        device=args.device,
        all_devices=args.all_devices,
        args=process_args,
        env=dict(args.env),
        timeout=args.timeout,
        keep_package=args.keep_package,
    )

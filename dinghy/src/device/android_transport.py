"""Android transport built on adb.

The executable is pushed to a scratch directory on the device and run
through ``adb shell``. Older adb releases do not forward the remote exit
status, so the shell command echoes it on a sentinel line that is removed
from the captured output.
"""

from typing import Dict, Optional, Sequence
import posixpath
import re
import shlex
import subprocess

from dinghy.src.core.errors import DeviceDisconnected, InstallFailed, LaunchFailed
from dinghy.src.core.models import AppPackage, Device, ExitStatus, StreamKind
from dinghy.src.device.transport import (
    DeviceTransport,
    InstallHandle,
    PipedProcess,
    ProcessHandle,
    run_tool,
    spawn_tool,
)

EXIT_SENTINEL = "__DINGHY_EXIT__"
SENTINEL_RE = re.compile(r"^(.*)" + EXIT_SENTINEL + r"(\d+)\s*$", re.DOTALL)
DISCONNECT_MARKERS = (
    "no devices/emulators found",
    "device offline",
    "error: device",
    "error: closed",
    "unauthorized",
)


def is_disconnect_message(text: str) -> bool:
    text = text.lower()
    return any(marker in text for marker in DISCONNECT_MARKERS)


def sentinel_filter(process: ProcessHandle, kind: StreamKind, line: str) -> Optional[str]:
    """Strip the exit status sentinel, keeping output that shares its line"""
    if kind is not StreamKind.STDOUT or EXIT_SENTINEL not in line:
        return line
    m = SENTINEL_RE.match(line)
    if not m:
        return line
    process.markers["exit"] = m.group(2)
    return m.group(1) or None


def build_shell_command(remote_dir: str, executable: str, args: Sequence[str], env: Dict[str, str]) -> str:
    """Shell command line run on the device"""
    assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
    command = " ".join(
        part
        for part in (
            assignments,
            shlex.quote(f"./{executable}"),
            " ".join(shlex.quote(a) for a in args),
        )
        if part
    )
    return f"cd {shlex.quote(remote_dir)} && {command}; echo {EXIT_SENTINEL}$?"


class AndroidTransport(DeviceTransport):
    def __init__(self, device: Device, adb_path: str = "adb", remote_root: str = "/data/local/tmp/dinghy"):
        super().__init__(device)
        self.adb_path = adb_path
        self.remote_root = remote_root

    def _adb(self, *args: str) -> list:
        return [self.adb_path, "-s", self.device.connection, *args]

    def is_connected(self) -> bool:
        try:
            result = run_tool(self._adb("get-state"), timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0 and result.stdout.strip() == "device"

    def _install_step(self, *args: str) -> None:
        try:
            result = run_tool(self._adb(*args))
        except OSError as e:
            raise InstallFailed(f"cannot run {self.adb_path}: {e}")
        if result.returncode != 0:
            message = (result.stderr or result.stdout).strip()
            if is_disconnect_message(message) or not self.is_connected():
                raise InstallFailed(f"device {self.device.identifier} disconnected: {message}")
            raise InstallFailed(message or f"adb {args[0]} exited with {result.returncode}")

    def install(self, package: AppPackage) -> InstallHandle:
        remote_dir = posixpath.join(self.remote_root, package.application_identifier)
        remote_exe = posixpath.join(remote_dir, package.executable_name)
        self.console.log(f"[blue]Pushing {package.executable_name} to {self.device}:[/] {remote_dir}")

        self._install_step("shell", "mkdir", "-p", remote_dir)
        self._install_step("push", str(package.path), remote_exe)
        self._install_step("shell", "chmod", "755", remote_exe)
        return InstallHandle(device=self.device, package=package, remote_path=remote_dir)

    def launch(self, handle: InstallHandle, args: Sequence[str], env: Dict[str, str]) -> ProcessHandle:
        command = build_shell_command(handle.remote_path, handle.package.executable_name, args, env)
        self.console.log(f"[cyan]Launching on {self.device}:[/] {handle.package.executable_name}")
        try:
            process = spawn_tool(self._adb("shell", command))
        except OSError as e:
            raise LaunchFailed(f"cannot run {self.adb_path}: {e}")
        return PipedProcess(handle, process, line_filter=sentinel_filter)

    def wait_exit(self, process: PipedProcess) -> ExitStatus:
        returncode = process.wait()
        if "exit" in process.markers:
            return ExitStatus(int(process.markers["exit"]))

        tail = process.transcript[-1] if process.transcript else ""
        if is_disconnect_message(tail) or not self.is_connected():
            raise DeviceDisconnected(self.device.identifier, "adb shell ended without exit status")
        return ExitStatus(returncode)

    def terminate(self, process: ProcessHandle) -> None:
        process.kill()
        # Killing the local adb client does not always stop the remote process
        try:
            run_tool(self._adb("shell", "pkill", "-f", process.install.package.executable_name), timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.console.log(f"[yellow]Could not stop remote process on {self.device}:[/] {e}")

    def uninstall(self, handle: InstallHandle) -> None:
        try:
            result = run_tool(self._adb("shell", "rm", "-rf", handle.remote_path), timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.console.log(f"[yellow]Cleanup failed on {self.device}:[/] {e}")
            return
        if result.returncode != 0:
            self.console.log(f"[yellow]Cleanup failed on {self.device}:[/] {result.stderr.strip()}")

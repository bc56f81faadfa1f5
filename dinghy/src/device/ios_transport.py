"""iOS transport built on ios-deploy and libimobiledevice.

ios-deploy installs the bundle, then runs it under lldb on the device and
relays the process output. Lines printed before the debugger reports the
launch are ios-deploy's own progress messages and are kept out of the
captured output.

Caveat: on aarch64 devices the launched process may not receive its
command line arguments. Arguments are still passed, and the session can
additionally export them in the DINGHY_ARGS environment variable.
"""

from typing import Dict, Optional, Sequence
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

LAUNCHED_RE = re.compile(r"^Process \d+ launched")
EXITED_RE = re.compile(r"^Process \d+ exited with status = (-?\d+)")
DEBUGGER_MARKERS = ("PROCESS_EXITED", "PROCESS_STOPPED")


def ios_deploy_filter(process: ProcessHandle, kind: StreamKind, line: str) -> Optional[str]:
    """Drop ios-deploy and lldb chatter, record the exit status"""
    stripped = line.strip()
    if "launched" not in process.markers:
        if LAUNCHED_RE.match(stripped):
            process.markers["launched"] = stripped
        return None

    if m := EXITED_RE.match(stripped):
        process.markers["exit"] = m.group(1)
        return None
    if stripped in DEBUGGER_MARKERS:
        process.markers["debugger"] = stripped
        return None
    return line


class IosTransport(DeviceTransport):
    def __init__(
        self,
        device: Device,
        ios_deploy_path: str = "ios-deploy",
        idevice_id_path: str = "idevice_id",
    ):
        super().__init__(device)
        self.ios_deploy_path = ios_deploy_path
        self.idevice_id_path = idevice_id_path

    @property
    def loses_arguments(self) -> bool:
        return self.device.arch == "aarch64"

    def _ios_deploy(self, *args: str) -> list:
        return [self.ios_deploy_path, "--id", self.device.connection, *args]

    def is_connected(self) -> bool:
        try:
            result = run_tool([self.idevice_id_path, "-l"], timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return self.device.connection in result.stdout.split()

    def install(self, package: AppPackage) -> InstallHandle:
        self.console.log(f"[blue]Installing {package.path.name} on {self.device}[/]")
        try:
            result = run_tool(self._ios_deploy("--bundle", str(package.path)))
        except OSError as e:
            raise InstallFailed(f"cannot run {self.ios_deploy_path}: {e}")

        if result.returncode != 0:
            if not self.is_connected():
                raise InstallFailed(f"device {self.device.identifier} disconnected during install")
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise InstallFailed(detail[-1] if detail else f"ios-deploy exited with {result.returncode}")

        return InstallHandle(device=self.device, package=package, remote_path=package.application_identifier)

    def launch(self, handle: InstallHandle, args: Sequence[str], env: Dict[str, str]) -> ProcessHandle:
        cmd = self._ios_deploy(
            "--bundle",
            str(handle.package.path),
            "--noinstall",
            "--debug",
            "--noninteractive",
        )
        if args:
            cmd += ["--args", " ".join(shlex.quote(a) for a in args)]
        if env:
            cmd += ["--envs", " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())]

        self.console.log(f"[cyan]Launching on {self.device}:[/] {handle.package.executable_name}")
        try:
            process = spawn_tool(cmd)
        except OSError as e:
            raise LaunchFailed(f"cannot run {self.ios_deploy_path}: {e}")
        return PipedProcess(handle, process, line_filter=ios_deploy_filter)

    def wait_exit(self, process: PipedProcess) -> ExitStatus:
        returncode = process.wait()
        if "exit" in process.markers:
            return ExitStatus(int(process.markers["exit"]))
        if process.markers.get("debugger") == "PROCESS_EXITED":
            return ExitStatus(returncode)

        if not self.is_connected():
            raise DeviceDisconnected(self.device.identifier, "lost while waiting for exit status")
        if "launched" not in process.markers:
            tail = "".join(process.transcript).strip().splitlines()
            raise LaunchFailed(tail[-1] if tail else f"ios-deploy exited with {returncode}")
        return ExitStatus(returncode)

    def uninstall(self, handle: InstallHandle) -> None:
        try:
            result = run_tool(
                self._ios_deploy("--uninstall_only", "--bundle_id", handle.package.application_identifier),
                timeout=120,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.console.log(f"[yellow]Uninstall failed on {self.device}:[/] {e}")
            return
        if result.returncode != 0:
            self.console.log(f"[yellow]Uninstall failed on {self.device}:[/] {result.stderr.strip()}")

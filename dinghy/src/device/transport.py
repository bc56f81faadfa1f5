"""Device transport interface and the pipe plumbing shared by its variants.

A transport drives one device family's native tooling. The session only
talks to this interface, so the install/launch mechanics of each family
stay in their own module.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence
import queue
import subprocess
import threading

from dinghy.logger import get_console
from dinghy.src.core.models import AppPackage, Device, ExitStatus, OutputChunk, StreamKind

# Returns the text to pass on, or None to swallow the line
LineFilter = Callable[["ProcessHandle", StreamKind, str], Optional[str]]

_EOF = object()


@dataclass
class InstallHandle:
    device: Device
    package: AppPackage
    remote_path: Optional[str] = None


class ProcessHandle:
    """A process launched on a device"""

    def __init__(self, install: InstallHandle):
        self.install = install
        self.markers: Dict[str, str] = {}
        self.transcript: Deque[str] = deque(maxlen=50)

    @property
    def device(self) -> Device:
        return self.install.device

    def chunks(self) -> Iterator[OutputChunk]:
        raise NotImplementedError

    def kill(self) -> None:
        pass


class PipedProcess(ProcessHandle):
    """A host-side tool process whose pipes carry the device process output.

    One reader thread per pipe pushes lines into a queue as soon as the
    process starts, so output is never lost even if nobody is streaming yet.
    """

    def __init__(
        self,
        install: InstallHandle,
        process: subprocess.Popen,
        line_filter: Optional[LineFilter] = None,
    ):
        super().__init__(install)
        self.process = process
        self.line_filter = line_filter
        self._queue: "queue.Queue" = queue.Queue()
        self._streamed = False
        self._readers: List[threading.Thread] = []
        for kind, pipe in ((StreamKind.STDOUT, process.stdout), (StreamKind.STDERR, process.stderr)):
            if pipe is None:
                continue
            reader = threading.Thread(target=self._pump, args=(kind, pipe), daemon=True)
            self._readers.append(reader)
            reader.start()

    def _pump(self, kind: StreamKind, pipe) -> None:
        try:
            for line in iter(pipe.readline, ""):
                line = line.replace("\r\n", "\n")
                self.transcript.append(line)
                if self.line_filter is not None:
                    line = self.line_filter(self, kind, line)
                if line:
                    self._queue.put(OutputChunk(kind, line))
        finally:
            pipe.close()
            self._queue.put(_EOF)

    def chunks(self) -> Iterator[OutputChunk]:
        """Yield output until every pipe is closed; can only be consumed once"""
        if self._streamed:
            raise RuntimeError("Output stream already consumed; launch again for a new stream")
        self._streamed = True
        remaining = len(self._readers)
        while remaining:
            item = self._queue.get()
            if item is _EOF:
                remaining -= 1
                continue
            yield item

    def wait(self) -> int:
        """Wait for the tool to exit and for its pipes to be read to the end"""
        returncode = self.process.wait()
        for reader in self._readers:
            reader.join()
        return returncode

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()


class DeviceTransport(ABC):
    """Capabilities a device family must provide to run a package"""

    def __init__(self, device: Device):
        self.device = device
        self.console = get_console()

    @property
    def loses_arguments(self) -> bool:
        """True when launched processes may not see their command line arguments"""
        return False

    @abstractmethod
    def install(self, package: AppPackage) -> InstallHandle:
        """Install the package; raises InstallFailed"""

    @abstractmethod
    def launch(self, handle: InstallHandle, args: Sequence[str], env: Dict[str, str]) -> ProcessHandle:
        """Start the installed executable; raises LaunchFailed"""

    def stream_output(self, process: ProcessHandle) -> Iterator[OutputChunk]:
        """Lazy output of the process, in order; raises DeviceDisconnected"""
        return process.chunks()

    @abstractmethod
    def wait_exit(self, process: ProcessHandle) -> ExitStatus:
        """Block until the process exits; raises DeviceDisconnected"""

    def terminate(self, process: ProcessHandle) -> None:
        """Best-effort stop, used for timeouts and cancellation"""
        process.kill()

    @abstractmethod
    def uninstall(self, handle: InstallHandle) -> None:
        """Best-effort removal of the installed package"""


def run_tool(cmd: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run a host tool and capture its output as text"""
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def spawn_tool(cmd: List[str]) -> subprocess.Popen:
    return subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        bufsize=1,
    )

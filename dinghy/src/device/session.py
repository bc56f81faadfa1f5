"""One install, launch, capture and cleanup cycle against a single device.

State machine::

    IDLE --install--> INSTALLED --launch--> RUNNING --> COMPLETED
      |                  |                     |------> TIMED_OUT
      +--> FAILED <------+                     |------> DISCONNECTED
                                               +------> FAILED

While RUNNING, a drain thread copies the output stream into the session log
and a waiter thread blocks on the exit status. Both report to one event
queue. The drain thread is always joined before a result is returned so the
log holds every chunk received before the process ended.
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union
import queue
import shlex
import threading
import time

from dinghy.logger import get_console
from dinghy.src.core.errors import (
    DeviceBusy,
    DeviceDisconnected,
    DinghyError,
    SessionCancelled,
    SessionTimedOut,
    TransportError,
)
from dinghy.src.core.models import (
    AppPackage,
    OutputChunk,
    SessionOutcome,
    SessionResult,
    SessionState,
)
from dinghy.src.device.transport import DeviceTransport, InstallHandle, ProcessHandle

ARGS_ENV_VAR = "DINGHY_ARGS"

_leases: Set[str] = set()
_leases_lock = threading.Lock()


@contextmanager
def device_lease(device_id: str) -> Iterator[None]:
    """Exclusive use of a physical device for the duration of a session"""
    with _leases_lock:
        if device_id in _leases:
            raise DeviceBusy(device_id)
        _leases.add(device_id)
    try:
        yield
    finally:
        with _leases_lock:
            _leases.discard(device_id)


class DeviceSession:
    """Runs one package on the device owned by ``transport``.

    ``timeout`` is in seconds; None waits for the device indefinitely.
    ``args_via_env`` exports the arguments in DINGHY_ARGS as well; "auto"
    does so only when the transport reports that arguments may be lost.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        package: AppPackage,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        args_via_env: Union[bool, str] = "auto",
        poll_interval: float = 0.1,
        drain_grace: float = 5.0,
    ):
        self.console = get_console()
        self.transport = transport
        self.device = transport.device
        self.package = package
        self.args = list(args)
        self.env = dict(env or {})
        # 0 means no limit, as in the config file
        self.timeout = timeout if timeout else None
        self.args_via_env = args_via_env
        self.poll_interval = poll_interval
        self.drain_grace = drain_grace

        self.state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self._output: List[OutputChunk] = []
        self._output_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._terminated = False
        self._process: Optional[ProcessHandle] = None

    def _transition(self, state: SessionState) -> None:
        self.state = state
        self.history.append(state)

    def cancel(self) -> None:
        """Ask a running session to stop; it terminates the process and cleans up"""
        self._cancelled.set()

    def launch_environment(self) -> Dict[str, str]:
        env = dict(self.env)
        use_env = self.args_via_env is True or (
            self.args_via_env == "auto" and self.transport.loses_arguments
        )
        if use_env and self.args:
            env[ARGS_ENV_VAR] = " ".join(shlex.quote(a) for a in self.args)
        return env

    def run(self) -> SessionResult:
        try:
            with device_lease(self.device.identifier):
                return self._run()
        except DeviceBusy as e:
            self.console.log(f"[red]{e}[/]")
            self._transition(SessionState.FAILED)
            return self._result(SessionOutcome.FAILED, diagnostics=e)

    def _run(self) -> SessionResult:
        try:
            handle = self.transport.install(self.package)
        except TransportError as e:
            self.console.log(f"[red]Install on {self.device} failed:[/] {e}")
            self._transition(SessionState.FAILED)
            return self._result(SessionOutcome.FAILED, diagnostics=e)
        self._transition(SessionState.INSTALLED)

        try:
            return self._launch_and_wait(handle)
        finally:
            self._uninstall(handle)

    def _launch_and_wait(self, handle: InstallHandle) -> SessionResult:
        try:
            self._process = self.transport.launch(handle, self.args, self.launch_environment())
        except TransportError as e:
            self.console.log(f"[red]Launch on {self.device} failed:[/] {e}")
            self._transition(SessionState.FAILED)
            return self._result(SessionOutcome.FAILED, diagnostics=e)
        self._transition(SessionState.RUNNING)

        events: "queue.Queue[Tuple[str, object]]" = queue.Queue()
        drain = threading.Thread(target=self._drain, args=(self._process, events), daemon=True)
        waiter = threading.Thread(target=self._wait, args=(self._process, events), daemon=True)
        drain.start()
        waiter.start()

        try:
            kind, value = self._next_event(events)
        except KeyboardInterrupt:
            self._cancelled.set()
            self._terminate()
            drain.join(self.drain_grace)
            self._transition(SessionState.FAILED)
            raise

        if kind == "exit":
            # Exit observed: the stream ends with the process, wait for all of it
            drain.join()
            self._transition(SessionState.COMPLETED)
            self.console.log(f"[green]{self.device}: exited with status {value.code}[/]")
            return self._result(SessionOutcome.COMPLETED, exit_code=value.code)

        if kind == "timeout":
            self._terminate()
            drain.join(self.drain_grace)
            self._transition(SessionState.TIMED_OUT)
            error = SessionTimedOut(self.device.identifier, self.timeout)
            self.console.log(f"[red]{error}[/]")
            return self._result(SessionOutcome.TIMED_OUT, diagnostics=error)

        if kind == "disconnected":
            drain.join(self.drain_grace)
            self._transition(SessionState.DISCONNECTED)
            self.console.log(f"[red]{value}[/]")
            return self._result(SessionOutcome.DISCONNECTED, diagnostics=value)

        # Cancelled, or a transport error while running
        self._terminate()
        drain.join(self.drain_grace)
        self._transition(SessionState.FAILED)
        error = value if isinstance(value, DinghyError) else SessionCancelled(f"Session on {self.device} cancelled")
        self.console.log(f"[red]{error}[/]")
        return self._result(SessionOutcome.FAILED, diagnostics=error)

    def _next_event(self, events: "queue.Queue") -> Tuple[str, object]:
        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        while True:
            if self._cancelled.is_set():
                return "cancelled", None
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return "timeout", None
                wait = min(wait, remaining)
            try:
                kind, value = events.get(timeout=wait)
            except queue.Empty:
                continue
            if kind == "stream-end":
                continue
            return kind, value

    def _drain(self, process: ProcessHandle, events: "queue.Queue") -> None:
        try:
            for chunk in self.transport.stream_output(process):
                with self._output_lock:
                    self._output.append(chunk)
        except DeviceDisconnected as e:
            events.put(("disconnected", e))
        except TransportError as e:
            events.put(("error", e))
        except Exception as e:
            events.put(("error", self._wrap_error("Reading output", e)))
        else:
            events.put(("stream-end", None))

    def _wait(self, process: ProcessHandle, events: "queue.Queue") -> None:
        try:
            status = self.transport.wait_exit(process)
        except DeviceDisconnected as e:
            events.put(("disconnected", e))
        except TransportError as e:
            events.put(("error", e))
        except Exception as e:
            events.put(("error", self._wrap_error("Waiting for exit", e)))
        else:
            events.put(("exit", status))

    def _wrap_error(self, action: str, error: Exception) -> TransportError:
        """Any failure while RUNNING must still end the session"""
        wrapped = TransportError(f"{action} on {self.device} failed: {type(error).__name__}: {error}")
        wrapped.__cause__ = error
        return wrapped

    def _terminate(self) -> None:
        if self._terminated or self._process is None:
            return
        self._terminated = True
        try:
            self.transport.terminate(self._process)
        except Exception as e:
            self.console.log(f"[yellow]Terminate on {self.device} failed:[/] {e}")

    def _uninstall(self, handle: InstallHandle) -> None:
        try:
            self.transport.uninstall(handle)
        except Exception as e:
            self.console.log(f"[yellow]Uninstall on {self.device} failed:[/] {e}")

    def _result(
        self,
        outcome: SessionOutcome,
        exit_code: Optional[int] = None,
        diagnostics: Optional[DinghyError] = None,
    ) -> SessionResult:
        with self._output_lock:
            output = list(self._output)
        return SessionResult(
            device=self.device,
            outcome=outcome,
            exit_code=exit_code,
            output=output,
            diagnostics=diagnostics,
        )


def run_sessions(sessions: Sequence[DeviceSession]) -> List[SessionResult]:
    """Run sessions for different devices in parallel, results in input order"""
    if not sessions:
        return []
    with ThreadPoolExecutor(max_workers=len(sessions), thread_name_prefix="dinghy-session") as pool:
        futures = [pool.submit(session.run) for session in sessions]
        try:
            return [future.result() for future in futures]
        except KeyboardInterrupt:
            for session in sessions:
                session.cancel()
            raise

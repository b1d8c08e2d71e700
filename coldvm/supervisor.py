"""Child process lifecycle (QEMU, websockify) for Cold VM."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import contextmanager
from typing import List, Optional

from coldvm.constants import (
    CHILD_STOP_TIMEOUT,
    HYPERVISOR_READY_TIMEOUT,
    PROXY_READY_TIMEOUT,
    READY_POLL_INTERVAL,
)
from coldvm.exceptions import LauncherError, SpawnError
from coldvm.models import (
    ChildProcess,
    ChildRole,
    ChildState,
    LaunchPlan,
    SupervisorState,
)
from coldvm.utils import format_command, log, port_open

_SHUTDOWN_SIGNALS = {signal.SIGINT, signal.SIGTERM}


def _unblock_shutdown_signals() -> None:
    # Runs in the child between fork and exec; the mask survives exec.
    signal.pthread_sigmask(signal.SIG_UNBLOCK, _SHUTDOWN_SIGNALS)


@contextmanager
def _deferred_shutdown_signals():
    """Hold SIGINT/SIGTERM until a freshly spawned child is tracked."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, _SHUTDOWN_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    """Signal the child and everything it forked (it leads its own session)."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


class ProcessSupervisor:
    """Start QEMU and the display proxy in order and tear them down in reverse.

    Children are not monitored once the supervisor is ACTIVE: if QEMU or
    websockify dies on its own, nothing notices until the next shutdown, and
    nothing is restarted.
    """

    def __init__(
        self,
        hypervisor_ready_timeout: float = HYPERVISOR_READY_TIMEOUT,
        proxy_ready_timeout: float = PROXY_READY_TIMEOUT,
        stop_timeout: float = CHILD_STOP_TIMEOUT,
        poll_interval: float = READY_POLL_INTERVAL,
    ) -> None:
        self.state = SupervisorState.IDLE
        self.hypervisor: Optional[ChildProcess] = None
        self.proxy: Optional[ChildProcess] = None
        self._shutting_down = False
        self._failed = False
        self.hypervisor_ready_timeout = hypervisor_ready_timeout
        self.proxy_ready_timeout = proxy_ready_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval

    @property
    def children(self) -> List[ChildProcess]:
        """Tracked children in start order."""
        return [child for child in (self.hypervisor, self.proxy) if child is not None]

    @property
    def exit_code(self) -> int:
        return 1 if self._failed else 0

    def boot(self, plan: LaunchPlan) -> bool:
        if self.state is not SupervisorState.IDLE:
            raise LauncherError(f"Cannot boot from state {self.state.value}")

        if plan.media.is_empty:
            log("ERROR", "No bootable media available!")
            self._fail()
            return False

        self.state = SupervisorState.LAUNCHING
        try:
            self.hypervisor = ChildProcess(ChildRole.HYPERVISOR, list(plan.hypervisor_command))
            self._start(self.hypervisor, plan.hypervisor_port, self.hypervisor_ready_timeout)
            log("SUCCESS", "QEMU started successfully!")

            if plan.proxy_command is not None:
                self.proxy = ChildProcess(ChildRole.DISPLAY_PROXY, list(plan.proxy_command))
                if plan.proxy_assets is not None and not plan.proxy_assets.exists():
                    raise SpawnError(f"noVNC directory not found at: {plan.proxy_assets}")
                self._start(self.proxy, plan.proxy_port, self.proxy_ready_timeout)
                log("SUCCESS", "Websockify started successfully!")
        except SpawnError as exc:
            log("ERROR", str(exc))
            if self._begin_shutdown():
                self._teardown()
            self._fail()
            return False

        if self.state is SupervisorState.LAUNCHING:
            self.state = SupervisorState.ACTIVE
        return True

    def shutdown(self, reason: str = "shutdown requested") -> bool:
        """Stop every running child, last started first.

        Only the first call does anything; it returns True once all children
        are gone. Later calls (a second Ctrl+C) return False immediately.
        """
        if not self._begin_shutdown():
            return False
        log("INFO", f"Shutting down Cold VM ({reason})...")
        self.state = SupervisorState.SHUTTING_DOWN
        self._teardown()
        self.state = SupervisorState.FAILED if self._failed else SupervisorState.TERMINATED
        return True

    def wait_forever(self) -> None:
        """Block until a signal handler ends the process.

        This does not poll the children, so an unexpected exit of QEMU or
        websockify goes unnoticed.
        """
        log("INFO", "Press Ctrl+C to shutdown the VM")
        log("DEBUG", "Child processes are not monitored; an unexpected exit will not be detected")
        while True:
            time.sleep(1)

    def _begin_shutdown(self) -> bool:
        if self._shutting_down:
            return False
        self._shutting_down = True
        return True

    def _fail(self) -> None:
        self._failed = True
        self.state = SupervisorState.FAILED

    def _start(self, child: ChildProcess, port: Optional[int], timeout: float) -> None:
        log("INFO", f"Starting {child.label}...")
        log("DEBUG", f"{child.label} command: {format_command(child.command)}")
        if port is not None and port_open("127.0.0.1", port):
            # Another listener would make the port check pass; fall back to liveness only.
            log("WARN", f"Port {port} is already in use; {child.label} may fail to bind it")
            port = None
        with _deferred_shutdown_signals():
            try:
                child.process = subprocess.Popen(
                    child.command,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                    preexec_fn=_unblock_shutdown_signals,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                raise SpawnError(f"Failed to start {child.label}: {exc}") from exc
            child.transition(ChildState.RUNNING)
        log("DEBUG", f"{child.label} running with PID {child.pid}")
        self._await_ready(child, port, timeout)

    def _await_ready(self, child: ChildProcess, port: Optional[int], timeout: float) -> None:
        """Give the child up to ``timeout`` seconds to settle.

        There is no handshake with QEMU or websockify: readiness means the
        process is still alive and, when it is expected to listen, its port
        accepts connections.
        """
        proc = child.process
        assert proc is not None
        deadline = time.monotonic() + timeout
        while True:
            if proc.poll() is not None:
                raise SpawnError(f"{child.label} exited prematurely (code {proc.returncode})")
            if port is not None and port_open("127.0.0.1", port):
                log("DEBUG", f"{child.label} is listening on port {port}")
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)
        if port is not None:
            log("WARN", f"{child.label} is running but port {port} did not open within {timeout:g}s")

    def _teardown(self) -> None:
        for child in reversed(self.children):
            self._stop_child(child)

    def _stop_child(self, child: ChildProcess) -> None:
        if child.state is not ChildState.RUNNING:
            return
        proc = child.process
        assert proc is not None
        child.transition(ChildState.STOPPING)
        if proc.poll() is None:
            _signal_group(proc, signal.SIGTERM)
        else:
            log("WARN", f"{child.label} had already exited (code {proc.returncode})")
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            log("WARN", f"{child.label} ignored SIGTERM for {self.stop_timeout:g}s; killing it")
            _signal_group(proc, signal.SIGKILL)
            proc.wait()
        child.process = None
        child.transition(ChildState.STOPPED)
        log("SUCCESS", f"{child.label} stopped")

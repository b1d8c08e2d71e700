"""Tests for coldvm.supervisor module."""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from coldvm.exceptions import LauncherError
from coldvm.models import ChildState, LaunchPlan, MediaSet, SupervisorState
from coldvm.supervisor import ProcessSupervisor

QEMU_CMD = ["qemu-system-x86_64", "-enable-kvm"]
PROXY_CMD = ["websockify", "--web=/novnc", "8080", "localhost:5901"]


def _proc(pid: int, exit_code=None) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.poll.return_value = exit_code
    proc.returncode = exit_code
    proc.wait.return_value = 0
    return proc


@pytest.fixture
def supervisor() -> ProcessSupervisor:
    return ProcessSupervisor(
        hypervisor_ready_timeout=0,
        proxy_ready_timeout=0,
        stop_timeout=5,
        poll_interval=0,
    )


@pytest.fixture
def assets(tmp_path) -> Path:
    path = tmp_path / "noVNC"
    path.mkdir()
    return path


@pytest.fixture
def remote_plan(assets) -> LaunchPlan:
    return LaunchPlan(
        media=MediaSet(disks=[Path("/d/disk.qcow2")]),
        hypervisor_command=QEMU_CMD,
        proxy_command=PROXY_CMD,
        hypervisor_port=5901,
        proxy_port=8080,
        proxy_assets=assets,
    )


@pytest.fixture
def local_plan() -> LaunchPlan:
    return LaunchPlan(media=MediaSet(isos=[Path("/r/live.iso")]), hypervisor_command=QEMU_CMD)


@pytest.fixture
def killpg():
    with patch("coldvm.supervisor.os.killpg") as mock_killpg:
        yield mock_killpg


@pytest.fixture(autouse=True)
def no_listeners():
    with patch("coldvm.supervisor.port_open", return_value=False) as mock_port_open:
        yield mock_port_open


class TestBoot:
    def test_empty_media_fails_without_spawning(self, supervisor):
        plan = LaunchPlan(media=MediaSet(), hypervisor_command=QEMU_CMD)
        with patch("coldvm.supervisor.subprocess.Popen") as mock_popen:
            assert supervisor.boot(plan) is False
        mock_popen.assert_not_called()
        assert supervisor.state is SupervisorState.FAILED
        assert supervisor.exit_code == 1
        assert supervisor.children == []

    def test_remote_starts_hypervisor_then_proxy(self, supervisor, remote_plan, killpg):
        qemu, proxy = _proc(101), _proc(202)
        with patch("coldvm.supervisor.subprocess.Popen", side_effect=[qemu, proxy]) as mock_popen:
            assert supervisor.boot(remote_plan) is True
        assert [c.args[0] for c in mock_popen.call_args_list] == [QEMU_CMD, PROXY_CMD]
        assert supervisor.state is SupervisorState.ACTIVE
        assert supervisor.hypervisor.state is ChildState.RUNNING
        assert supervisor.proxy.state is ChildState.RUNNING
        assert supervisor.hypervisor.pid == 101
        killpg.assert_not_called()

    def test_spawn_uses_argv_and_own_session(self, supervisor, local_plan):
        with patch("coldvm.supervisor.subprocess.Popen", return_value=_proc(101)) as mock_popen:
            supervisor.boot(local_plan)
        args, kwargs = mock_popen.call_args
        assert args[0] == QEMU_CMD
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert "shell" not in kwargs

    def test_local_plan_has_no_proxy(self, supervisor, local_plan):
        with patch("coldvm.supervisor.subprocess.Popen", return_value=_proc(101)) as mock_popen:
            assert supervisor.boot(local_plan) is True
        mock_popen.assert_called_once()
        assert supervisor.proxy is None

    def test_boot_twice_raises(self, supervisor, local_plan):
        with patch("coldvm.supervisor.subprocess.Popen", return_value=_proc(101)):
            supervisor.boot(local_plan)
            with pytest.raises(LauncherError, match="Cannot boot"):
                supervisor.boot(local_plan)

    def test_proxy_spawn_failure_tears_down_hypervisor(self, supervisor, remote_plan, killpg):
        qemu = _proc(101)
        with patch(
            "coldvm.supervisor.subprocess.Popen",
            side_effect=[qemu, FileNotFoundError("websockify")],
        ):
            assert supervisor.boot(remote_plan) is False

        assert supervisor.state is SupervisorState.FAILED
        assert supervisor.exit_code == 1
        assert supervisor.hypervisor.history.count(ChildState.STOPPED) == 1
        assert supervisor.hypervisor.state is ChildState.STOPPED
        assert ChildState.RUNNING not in supervisor.proxy.history
        killpg.assert_called_once_with(101, signal.SIGTERM)
        qemu.wait.assert_called_once()

    def test_missing_assets_refuses_proxy(self, supervisor, remote_plan, tmp_path, killpg):
        plan = LaunchPlan(
            media=remote_plan.media,
            hypervisor_command=QEMU_CMD,
            proxy_command=PROXY_CMD,
            proxy_assets=tmp_path / "absent",
        )
        with (
            patch("coldvm.supervisor.subprocess.Popen", return_value=_proc(101)) as mock_popen,
            patch("coldvm.supervisor.log") as mock_log,
        ):
            assert supervisor.boot(plan) is False
        mock_popen.assert_called_once()
        mock_log.assert_any_call("ERROR", f"noVNC directory not found at: {tmp_path / 'absent'}")
        assert supervisor.hypervisor.state is ChildState.STOPPED
        assert supervisor.proxy.state is ChildState.NOT_STARTED

    def test_hypervisor_exiting_during_startup_fails(self, supervisor, remote_plan, killpg):
        qemu = _proc(101, exit_code=1)
        with patch("coldvm.supervisor.subprocess.Popen", return_value=qemu) as mock_popen:
            assert supervisor.boot(remote_plan) is False
        mock_popen.assert_called_once()
        killpg.assert_not_called()
        assert supervisor.hypervisor.state is ChildState.STOPPED
        assert supervisor.proxy is None

    def test_signal_after_failure_is_ignored(self, supervisor, remote_plan, killpg):
        with patch("coldvm.supervisor.subprocess.Popen", side_effect=[_proc(101), OSError("nope")]):
            supervisor.boot(remote_plan)
        killpg.reset_mock()
        assert supervisor.shutdown("SIGINT received") is False
        killpg.assert_not_called()
        assert supervisor.state is SupervisorState.FAILED


class TestReadiness:
    def test_returns_when_port_opens(self, no_listeners, remote_plan):
        supervisor = ProcessSupervisor(hypervisor_ready_timeout=30, proxy_ready_timeout=30, poll_interval=0)
        no_listeners.side_effect = [False, True, False, True]
        with (
            patch("coldvm.supervisor.subprocess.Popen", side_effect=[_proc(101), _proc(202)]),
            patch("coldvm.supervisor.time.sleep") as mock_sleep,
        ):
            assert supervisor.boot(remote_plan) is True
        mock_sleep.assert_not_called()
        assert no_listeners.call_args_list == [
            call("127.0.0.1", 5901),
            call("127.0.0.1", 5901),
            call("127.0.0.1", 8080),
            call("127.0.0.1", 8080),
        ]

    def test_busy_port_falls_back_to_liveness(self, no_listeners, remote_plan, killpg):
        supervisor = ProcessSupervisor(hypervisor_ready_timeout=0, proxy_ready_timeout=30, poll_interval=0)
        no_listeners.side_effect = lambda host, port: port == 8080
        proxy = _proc(202)
        proxy.poll.side_effect = [None, 1, 1, 1]
        proxy.returncode = 1
        with (
            patch("coldvm.supervisor.subprocess.Popen", side_effect=[_proc(101), proxy]),
            patch("coldvm.supervisor.time.sleep"),
            patch("coldvm.supervisor.log") as mock_log,
        ):
            assert supervisor.boot(remote_plan) is False
        mock_log.assert_any_call("WARN", "Port 8080 is already in use; Websockify may fail to bind it")
        mock_log.assert_any_call("ERROR", "Websockify exited prematurely (code 1)")
        killpg.assert_called_once_with(101, signal.SIGTERM)

    def test_port_never_opens_warns_but_continues(self, supervisor, remote_plan):
        with (
            patch("coldvm.supervisor.subprocess.Popen", side_effect=[_proc(101), _proc(202)]),
            patch("coldvm.supervisor.log") as mock_log,
        ):
            assert supervisor.boot(remote_plan) is True
        warnings = [c.args[1] for c in mock_log.call_args_list if c.args[0] == "WARN"]
        assert any("port 5901" in w for w in warnings)
        assert any("port 8080" in w for w in warnings)

    def test_polls_until_child_dies(self, remote_plan):
        supervisor = ProcessSupervisor(hypervisor_ready_timeout=30, poll_interval=0)
        qemu = _proc(101)
        qemu.poll.side_effect = [None, None, 3, 3]
        qemu.returncode = 3
        with (
            patch("coldvm.supervisor.subprocess.Popen", return_value=qemu),
            patch("coldvm.supervisor.time.sleep"),
            patch("coldvm.supervisor.log") as mock_log,
        ):
            assert supervisor.boot(remote_plan) is False
        mock_log.assert_any_call("ERROR", "QEMU exited prematurely (code 3)")


class TestShutdown:
    def _boot(self, supervisor, plan, procs):
        with patch("coldvm.supervisor.subprocess.Popen", side_effect=procs):
            assert supervisor.boot(plan) is True

    def test_reverse_order(self, supervisor, remote_plan, killpg):
        qemu, proxy = _proc(101), _proc(202)
        self._boot(supervisor, remote_plan, [qemu, proxy])
        assert supervisor.shutdown("SIGTERM received") is True
        assert killpg.call_args_list == [call(202, signal.SIGTERM), call(101, signal.SIGTERM)]
        assert supervisor.state is SupervisorState.TERMINATED
        assert supervisor.exit_code == 0
        assert supervisor.hypervisor.history == [
            ChildState.NOT_STARTED,
            ChildState.RUNNING,
            ChildState.STOPPING,
            ChildState.STOPPED,
        ]
        assert supervisor.hypervisor.process is None

    def test_proxy_waited_before_hypervisor_signalled(self, supervisor, remote_plan, killpg):
        events = []
        qemu, proxy = _proc(101), _proc(202)
        proxy.wait.side_effect = lambda timeout=None: events.append("proxy-exited")
        killpg.side_effect = lambda pid, sig: events.append(f"kill-{pid}")
        self._boot(supervisor, remote_plan, [qemu, proxy])
        supervisor.shutdown()
        assert events == ["kill-202", "proxy-exited", "kill-101"]

    def test_second_shutdown_is_noop(self, supervisor, remote_plan, killpg):
        qemu, proxy = _proc(101), _proc(202)
        self._boot(supervisor, remote_plan, [qemu, proxy])
        assert supervisor.shutdown() is True
        assert supervisor.shutdown() is False
        assert killpg.call_count == 2
        assert qemu.wait.call_count == 1
        assert supervisor.hypervisor.history.count(ChildState.STOPPED) == 1

    def test_already_exited_child_not_signalled(self, supervisor, remote_plan, killpg):
        qemu, proxy = _proc(101), _proc(202)
        self._boot(supervisor, remote_plan, [qemu, proxy])
        proxy.poll.return_value = 0
        supervisor.shutdown()
        killpg.assert_called_once_with(101, signal.SIGTERM)
        assert supervisor.proxy.state is ChildState.STOPPED

    def test_timeout_escalates_to_kill(self, supervisor, local_plan, killpg):
        qemu = _proc(101)
        qemu.wait.side_effect = [subprocess.TimeoutExpired(cmd="qemu", timeout=5), 0]
        self._boot(supervisor, local_plan, [qemu])
        supervisor.shutdown()
        assert killpg.call_args_list == [call(101, signal.SIGTERM), call(101, signal.SIGKILL)]
        assert supervisor.hypervisor.state is ChildState.STOPPED

    def test_vanished_process_group_is_tolerated(self, supervisor, local_plan, killpg):
        killpg.side_effect = ProcessLookupError
        self._boot(supervisor, local_plan, [_proc(101)])
        assert supervisor.shutdown() is True
        assert supervisor.hypervisor.state is ChildState.STOPPED

    def test_shutdown_before_boot(self, supervisor, killpg):
        assert supervisor.shutdown() is True
        killpg.assert_not_called()
        assert supervisor.state is SupervisorState.TERMINATED

    def test_signal_during_launch_tears_down_started_child(self, supervisor, remote_plan, killpg, no_listeners):
        checks = []

        def handler_fires(host, port):
            checks.append(port)
            if len(checks) == 1:
                return False
            supervisor.shutdown("SIGINT received")
            raise SystemExit(0)

        no_listeners.side_effect = handler_fires
        with patch("coldvm.supervisor.subprocess.Popen", return_value=_proc(101)) as mock_popen:
            with pytest.raises(SystemExit):
                supervisor.boot(remote_plan)
        mock_popen.assert_called_once()
        killpg.assert_called_once_with(101, signal.SIGTERM)
        assert supervisor.hypervisor.state is ChildState.STOPPED
        assert supervisor.proxy is None
        assert supervisor.state is SupervisorState.TERMINATED


class TestWaitForever:
    def test_sleeps_until_interrupted(self, supervisor):
        with patch("coldvm.supervisor.time.sleep", side_effect=[None, None, KeyboardInterrupt]) as mock_sleep:
            with pytest.raises(KeyboardInterrupt):
                supervisor.wait_forever()
        assert mock_sleep.call_count == 3


class TestSignalMask:
    def test_signal_raised_during_spawn_waits_for_tracking(self, supervisor, local_plan, killpg):
        delivered = []
        during_spawn = []

        def record(signum, frame):
            delivered.append(supervisor.hypervisor.state)

        def spawn(*args, **kwargs):
            signal.pthread_kill(threading.get_ident(), signal.SIGTERM)
            during_spawn.extend(delivered)
            return _proc(101)

        previous = signal.signal(signal.SIGTERM, record)
        try:
            with patch("coldvm.supervisor.subprocess.Popen", side_effect=spawn):
                assert supervisor.boot(local_plan) is True
        finally:
            signal.signal(signal.SIGTERM, previous)
        assert during_spawn == []
        assert delivered == [ChildState.RUNNING]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _gone(pid: int) -> bool:
    """A pid that no longer exists, or is only a zombie awaiting its parent."""
    try:
        status = Path(f"/proc/{pid}/status").read_text()
    except FileNotFoundError:
        return True
    return "\nState:\tZ" in status


@pytest.mark.skipif(not Path("/proc/self/status").exists() or shutil.which("sh") is None, reason="needs /proc and sh")
class TestRealChildren:
    def test_child_starts_with_shutdown_signals_unblocked(self, supervisor, tmp_path):
        out = tmp_path / "sigblk"
        plan = LaunchPlan(
            media=MediaSet(isos=[Path("/r/live.iso")]),
            hypervisor_command=["sh", "-c", f"grep SigBlk /proc/self/status > {out}.tmp && mv {out}.tmp {out}; exec sleep 30"],
        )
        assert supervisor.boot(plan) is True
        try:
            assert _wait_for(out.exists)
            mask = int(out.read_text().split()[1], 16)
            assert mask & (1 << (signal.SIGINT - 1)) == 0
            assert mask & (1 << (signal.SIGTERM - 1)) == 0
        finally:
            supervisor.shutdown()

    def test_shutdown_stops_whole_process_group(self, supervisor, tmp_path):
        pidfile = tmp_path / "grandchild"
        plan = LaunchPlan(
            media=MediaSet(isos=[Path("/r/live.iso")]),
            hypervisor_command=["sh", "-c", f"sleep 30 & echo $! > {pidfile}.tmp && mv {pidfile}.tmp {pidfile}; wait"],
        )
        assert supervisor.boot(plan) is True
        assert _wait_for(pidfile.exists)
        grandchild = int(pidfile.read_text())
        pgid = supervisor.hypervisor.pid
        assert os.getpgid(grandchild) == pgid

        assert supervisor.shutdown() is True
        assert supervisor.hypervisor.state is ChildState.STOPPED
        assert _wait_for(lambda: _gone(grandchild))

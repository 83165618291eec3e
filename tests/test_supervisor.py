from __future__ import annotations

import io
import os
import signal
import subprocess
import threading
from pathlib import Path

import psutil
import pytest
import requests

from conftest import FakeResponse, FakeSession, dead_pid, posix_only, wait_until
from machpay.local.errors import (
    AlreadyRunningError,
    GatewayError,
    HealthCheckError,
    HealthCheckTimeoutError,
    LogNotFoundError,
    NotRunningError,
    ProcessExitError,
)
from machpay.local.supervisor import ProcessManager
from machpay.local.supervisor.persistence import read_pid, remove_pid, write_pid
from machpay.local.supervisor.process_utils import build_args, is_gateway_process

HEALTH_URL = "http://localhost:18402/healthz"


def test_build_args_full_and_empty() -> None:
    assert build_args(8402, "http://localhost:11434", True) == [
        "--port", "8402", "--upstream", "http://localhost:11434", "--debug",
    ]
    assert build_args(0, "", False) == []


def test_manager_setters_feed_build_args(tmp_path: Path) -> None:
    pm = ProcessManager(tmp_path / "gw", home_dir=tmp_path)
    assert pm.build_args() == []

    pm.set_port(9000)
    pm.set_upstream("http://up")
    pm.set_debug(True)

    assert pm.build_args() == ["--port", "9000", "--upstream", "http://up", "--debug"]
    assert pm.pid_file == tmp_path / "gateway.pid"
    assert pm.log_file == tmp_path / "gateway.log"


#* --- PID file ---
def test_pid_file_round_trip_and_guards(tmp_path: Path) -> None:
    pid_path = tmp_path / "gateway.pid"
    assert read_pid(pid_path) is None

    write_pid(pid_path, 4242)
    assert pid_path.read_text() == "4242"
    assert read_pid(pid_path) == 4242

    remove_pid(pid_path, only_if=1)
    assert pid_path.exists()
    remove_pid(pid_path, only_if=4242)
    assert not pid_path.exists()

    pid_path.write_text("not-a-pid")
    assert read_pid(pid_path) is None
    pid_path.write_text("-5")
    assert read_pid(pid_path) is None


def test_stop_without_start_raises_not_running(manager: ProcessManager) -> None:
    assert manager.is_running() is False
    with pytest.raises(NotRunningError):
        manager.stop()
    with pytest.raises(NotRunningError):
        manager.kill()
    with pytest.raises(NotRunningError):
        manager.get_pid()


def test_stale_pid_file(manager: ProcessManager) -> None:
    write_pid(manager.pid_file, dead_pid())

    assert manager.is_running() is False
    # Status queries never remove the file.
    assert manager.pid_file.exists()

    with pytest.raises(NotRunningError):
        manager.stop()
    assert not manager.pid_file.exists()


@posix_only
def test_start_refuses_when_recorded_process_is_alive(manager: ProcessManager, fake_gateway: Path) -> None:
    other = subprocess.Popen([str(fake_gateway)], stdout=subprocess.DEVNULL)
    try:
        write_pid(manager.pid_file, other.pid)

        assert manager.is_running() is True
        with pytest.raises(AlreadyRunningError):
            manager.start()
        with pytest.raises(AlreadyRunningError):
            manager.start_foreground()
    finally:
        other.kill()
        other.wait()
        manager.pid_file.unlink()


def test_pid_of_another_program_is_stale(manager: ProcessManager, foreign_process: subprocess.Popen) -> None:
    write_pid(manager.pid_file, foreign_process.pid)

    assert manager.is_running() is False
    with pytest.raises(NotRunningError):
        manager.kill()
    assert not manager.pid_file.exists()
    # The unrelated process is left alone.
    assert foreign_process.poll() is None


def test_is_gateway_process_matches_on_binary_path(fake_gateway: Path) -> None:
    me = psutil.Process()
    assert is_gateway_process(me, fake_gateway) is False
    assert is_gateway_process(me, Path(me.exe())) is True


#* --- Detached lifecycle ---
@posix_only
def test_start_then_stop(manager: ProcessManager) -> None:
    pid = manager.start()

    assert manager.is_running() is True
    assert manager.get_pid() == pid
    assert read_pid(manager.pid_file) == pid
    assert wait_until(lambda: "gateway up" in manager.log_file.read_text())
    assert "--port" in manager.log_file.read_text()

    info = manager.process_info()
    assert info["pid"] == pid
    assert info["memory_mb"] > 0

    manager.stop()

    assert manager.is_running() is False
    assert not manager.pid_file.exists()
    assert manager.reaper.wait(5)


@posix_only
def test_out_of_band_kill_is_detected(manager: ProcessManager) -> None:
    pid = manager.start()
    assert manager.is_running() is True

    os.kill(pid, signal.SIGKILL)

    assert wait_until(lambda: not manager.is_running())
    assert manager.reaper.wait(5)
    assert manager.reaper.returncode == -signal.SIGKILL
    assert not manager.pid_file.exists()


@posix_only
def test_kill_and_restart(manager: ProcessManager) -> None:
    first = manager.start()
    with pytest.raises(AlreadyRunningError):
        manager.start()

    second = manager.restart()
    assert second != first
    assert manager.get_pid() == second
    assert not psutil.pid_exists(first) or psutil.Process(first).status() == psutil.STATUS_ZOMBIE

    manager.kill()
    assert manager.is_running() is False
    assert not manager.pid_file.exists()


@posix_only
def test_stop_escalates_when_terminate_is_ignored(tmp_path: Path) -> None:
    script = tmp_path / "stubborn.sh"
    script.write_text("#!/bin/sh\ntrap '' TERM\nwhile true; do sleep 0.1; done\n")
    script.chmod(0o755)
    pm = ProcessManager(script, home_dir=tmp_path / "home")
    pm.graceful_timeout = 0.5

    pid = pm.start()
    pm.stop()

    assert pm.reaper.wait(5)
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    assert not pm.pid_file.exists()


def test_start_reports_unusable_home_dir(manager: ProcessManager) -> None:
    manager.home_dir.write_text("not a directory")

    with pytest.raises(GatewayError, match="create home dir"):
        manager.start()
    with pytest.raises(GatewayError, match="create home dir"):
        manager.start_foreground()


def test_start_reports_unopenable_log_file(manager: ProcessManager) -> None:
    manager.log_file.mkdir(parents=True)

    with pytest.raises(GatewayError, match="open log file"):
        manager.start()
    assert not manager.pid_file.exists()


#* --- Foreground ---
@posix_only
def test_foreground_cancel_forwards_output_and_cleans_up(manager: ProcessManager) -> None:
    out, err = io.StringIO(), io.StringIO()
    cancel = threading.Event()
    seen_pid = []

    def cancel_when_up() -> None:
        wait_until(lambda: "gateway up" in out.getvalue())
        seen_pid.append(read_pid(manager.pid_file))
        cancel.set()

    watcher = threading.Thread(target=cancel_when_up)
    watcher.start()
    manager.start_foreground(cancel, out, err)
    watcher.join()

    assert "gateway up" in out.getvalue()
    assert seen_pid and seen_pid[0] is not None
    assert not manager.pid_file.exists()
    assert manager.is_running() is False


@posix_only
def test_foreground_nonzero_exit(manager: ProcessManager, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_GATEWAY_EXIT", "3")

    with pytest.raises(ProcessExitError) as exc_info:
        manager.start_foreground(threading.Event(), io.StringIO(), io.StringIO())

    assert exc_info.value.returncode == 3
    assert not manager.pid_file.exists()


#* --- Health ---
def test_health_check(manager: ProcessManager, session: FakeSession) -> None:
    session.add(HEALTH_URL)
    manager.health_check()
    assert session.calls[-1][1]["timeout"] == 5

    session.add(HEALTH_URL, status=503)
    with pytest.raises(HealthCheckError, match="503"):
        manager.health_check()

    session.fail(HEALTH_URL, requests.ConnectionError("refused"))
    with pytest.raises(HealthCheckError):
        manager.health_check()


def test_wait_for_healthy_polls_until_ok(manager: ProcessManager, session: FakeSession) -> None:
    answers = iter([503, 503, 200])
    session.routes[HEALTH_URL] = lambda: FakeResponse(next(answers))

    manager.wait_for_healthy(timeout=5, interval=0.01)

    assert len(session.calls) == 3


def test_wait_for_healthy_times_out(manager: ProcessManager, session: FakeSession) -> None:
    session.add(HEALTH_URL, status=500)

    with pytest.raises(HealthCheckTimeoutError):
        manager.wait_for_healthy(timeout=0.1, interval=0.01)


#* --- Logs ---
def test_tail_logs_without_file(manager: ProcessManager) -> None:
    with pytest.raises(LogNotFoundError):
        manager.tail_logs(writer=io.StringIO())
    with pytest.raises(LogNotFoundError):
        manager.clear_logs()


def test_tail_logs_copies_content(manager: ProcessManager) -> None:
    manager.home_dir.mkdir(parents=True)
    manager.log_file.write_text("line one\nline two\n")
    out = io.StringIO()

    manager.tail_logs(follow=False, writer=out)

    assert out.getvalue() == "line one\nline two\n"


def test_tail_logs_passes_bytes_through_unchanged(manager: ProcessManager) -> None:
    raw = b"\xff\xfe not utf-8\nplain \xe2\x9c\x93\n"
    manager.home_dir.mkdir(parents=True)
    manager.log_file.write_bytes(raw)

    out = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
    manager.tail_logs(follow=False, writer=out)
    assert out.buffer.getvalue() == raw

    followed = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
    stop = threading.Event()
    follower = threading.Thread(target=manager.tail_logs, args=(stop, True, followed))
    follower.start()
    assert wait_until(lambda: followed.buffer.getvalue() == raw)
    stop.set()
    follower.join(timeout=5)
    assert not follower.is_alive()


def test_tail_logs_follow_until_stopped(manager: ProcessManager) -> None:
    manager.home_dir.mkdir(parents=True)
    manager.log_file.write_text("existing\n")
    out = io.StringIO()
    stop = threading.Event()

    follower = threading.Thread(target=manager.tail_logs, args=(stop, True, out))
    follower.start()
    assert wait_until(lambda: "existing" in out.getvalue())

    with open(manager.log_file, "a") as f:
        f.write("appended\n")
    assert wait_until(lambda: "appended" in out.getvalue())

    stop.set()
    follower.join(timeout=5)
    assert not follower.is_alive()


def test_clear_logs_truncates(manager: ProcessManager) -> None:
    manager.home_dir.mkdir(parents=True)
    manager.log_file.write_text("noise\n" * 100)

    manager.clear_logs()

    assert manager.log_file.exists()
    assert manager.log_file.stat().st_size == 0

import os
import sys
import time
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, TextIO

import requests

import machpay.settings as default_settings
from machpay.local.errors import (
    AlreadyRunningError,
    GatewayError,
    HealthCheckError,
    HealthCheckTimeoutError,
    LogNotFoundError,
    NotRunningError,
    ProcessExitError,
)
from machpay.local.supervisor import background_tasks, persistence, process_utils, shutdown
from machpay.local.supervisor.signals import platform_signals

log = logging.getLogger(__name__)


class ProcessManager:
    """
    Manages the lifecycle of the single gateway process.

    The PID file is the only record of whether the gateway runs; it is
    written on start and removed on clean exit, stop or kill. Start, stop
    and kill are expected to be called serially: concurrent managers (in
    this or other processes) are not arbitrated against each other.
    """

    def __init__(
        self,
        binary_path: Path,
        port: int = 0,
        upstream: str = "",
        debug: bool = False,
        home_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        :param binary_path: The installed gateway executable.
        :param port: Listen port passed as --port (0 means "gateway default").
        :param upstream: Upstream URL passed as --upstream ('' to omit).
        :param debug: Whether to pass --debug.
        :param home_dir: Directory holding the PID and log files.
        :param session: HTTP session used for health checks.
        """
        self.binary_path = Path(binary_path)
        self.port = port
        self.upstream = upstream
        self.debug = debug
        self.home_dir = Path(home_dir) if home_dir else default_settings.MACHPAY_HOME
        self.session = session or requests.Session()
        self.graceful_timeout: float = default_settings.GRACEFUL_SHUTDOWN_TIMEOUT
        self.reaper: Optional[background_tasks.ReaperTask] = None

    #* --- Runtime Parameters ---
    def set_port(self, port: int) -> None:
        self.port = port

    def set_upstream(self, upstream: str) -> None:
        self.upstream = upstream

    def set_debug(self, debug: bool) -> None:
        self.debug = debug

    @property
    def pid_file(self) -> Path:
        return self.home_dir / default_settings.PID_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.home_dir / default_settings.GATEWAY_LOG_NAME

    def _ensure_home_dir(self) -> None:
        try:
            self.home_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GatewayError(f"create home dir: {e}") from e

    def build_args(self) -> List[str]:
        return process_utils.build_args(self.port, self.upstream, self.debug)

    def _command(self) -> List[str]:
        return [str(self.binary_path)] + self.build_args()

    #* --- Status ---
    def _live_process(self) -> Optional[psutil.Process]:
        """Resolves the recorded PID to a live process, or None if stopped or stale."""
        pid = persistence.read_pid(self.pid_file)
        if pid is None:
            return None
        proc = process_utils.get_process_from_pid(pid)
        if proc is None or not platform_signals.is_alive(proc):
            log.debug(f"PID file '{self.pid_file}' references dead process {pid}.")
            return None
        if not process_utils.is_gateway_process(proc, self.binary_path):
            log.warning(f"PID {pid} in '{self.pid_file}' belongs to another program. Treating it as stale.")
            return None
        return proc

    def is_running(self) -> bool:
        """True if the PID file records a live gateway process. Never modifies the PID file."""
        return self._live_process() is not None

    def get_pid(self) -> int:
        """
        Returns the PID recorded in the PID file.

        :raises NotRunningError: If there is no readable PID file.
        """
        pid = persistence.read_pid(self.pid_file)
        if pid is None:
            raise NotRunningError()
        return pid

    def process_info(self) -> Dict[str, Any]:
        """Returns name/status/cpu/memory/uptime for the running gateway."""
        proc = self._live_process()
        if proc is None:
            raise NotRunningError()
        info = process_utils.process_info(proc)
        info["pid"] = proc.pid
        return info

    #* --- Start ---
    def start(self) -> int:
        """
        Starts the gateway detached, with output appended to the log file.

        :return: The PID of the new process.
        :raises AlreadyRunningError: If a live gateway is already recorded.
        :raises GatewayError: If the process cannot be spawned.
        """
        if self.is_running():
            raise AlreadyRunningError()

        self._ensure_home_dir()
        command = self._command()
        log.info(f"Starting gateway: {' '.join(command)}")

        try:
            log_handle = open(self.log_file, "ab")
        except OSError as e:
            raise GatewayError(f"open log file: {e}") from e

        try:
            p = subprocess.Popen(
                command,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=str(self.home_dir),
                **process_utils.get_popen_creation_flags(detached=True),
            )
        except OSError as e:
            log_handle.close()
            raise GatewayError(f"start gateway: {e}") from e

        try:
            persistence.write_pid(self.pid_file, p.pid)
        except OSError as e:
            p.kill()
            p.wait()
            log_handle.close()
            raise GatewayError(f"save PID: {e}") from e

        self.reaper = background_tasks.ReaperTask(p, self.pid_file, log_handle).start()
        log.info(f"Gateway started in background with PID: {p.pid}")
        return p.pid

    def start_foreground(
        self,
        cancel_event: Optional[threading.Event] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> None:
        """
        Runs the gateway attached to the caller's streams until it exits.

        Setting `cancel_event` stops the gateway and makes this call return
        normally. The PID file exists only while this call runs.

        :raises AlreadyRunningError: If a live gateway is already recorded.
        :raises ProcessExitError: If the gateway exits on its own with a non-zero status.
        """
        if self.is_running():
            raise AlreadyRunningError()

        cancel_event = cancel_event or threading.Event()
        self._ensure_home_dir()
        command = self._command()
        log.info(f"Starting gateway in foreground: {' '.join(command)}")

        try:
            p = subprocess.Popen(
                command,
                stdout=subprocess.PIPE if stdout is not None else None,
                stderr=subprocess.PIPE if stderr is not None else None,
                stdin=subprocess.DEVNULL,
                cwd=str(self.home_dir),
            )
        except OSError as e:
            raise GatewayError(f"start gateway: {e}") from e

        pumps = process_utils.stream_process_output(p, "gateway", stdout, stderr)
        cancelled = False
        try:
            try:
                persistence.write_pid(self.pid_file, p.pid)
            except OSError as e:
                raise GatewayError(f"save PID: {e}") from e
            while p.poll() is None:
                if cancel_event.wait(0.1):
                    cancelled = True
                    log.info("Foreground gateway cancelled. Shutting down...")
                    self._stop_child(p)
                    break
        finally:
            if p.poll() is None:
                self._stop_child(p)
            for t in pumps:
                t.join(timeout=2)
            persistence.remove_pid(self.pid_file)

        # Ctrl+C reaches the child too, so it may exit before the loop sees the event.
        if not (cancelled or cancel_event.is_set()) and p.returncode != 0:
            raise ProcessExitError(p.returncode)

    def _stop_child(self, p: subprocess.Popen) -> None:
        try:
            shutdown.graceful_shutdown_sequence(psutil.Process(p.pid), self.graceful_timeout)
        except psutil.NoSuchProcess:
            pass
        p.wait()

    #* --- Stop ---
    def _require_live_process(self) -> psutil.Process:
        proc = self._live_process()
        if proc is None:
            # Stale or missing: make sure nothing claims the gateway still runs.
            persistence.remove_pid(self.pid_file)
            raise NotRunningError()
        return proc

    def stop(self) -> None:
        """
        Stops the gateway gracefully, force-killing it after the grace period.

        :raises NotRunningError: If no live gateway is recorded (stale PID files are removed).
        """
        proc = self._require_live_process()
        log.info(f"Stopping gateway (PID {proc.pid})...")
        try:
            shutdown.graceful_shutdown_sequence(proc, self.graceful_timeout)
        except psutil.NoSuchProcess:
            persistence.remove_pid(self.pid_file)
            raise NotRunningError()
        self._await_reaper(proc.pid)
        persistence.remove_pid(self.pid_file)
        log.info("Gateway stopped.")

    def kill(self) -> None:
        """
        Force-kills the gateway immediately.

        :raises NotRunningError: If no live gateway is recorded.
        """
        proc = self._require_live_process()
        log.warning(f"Killing gateway (PID {proc.pid}).")
        try:
            shutdown.force_kill(proc)
        except psutil.NoSuchProcess:
            persistence.remove_pid(self.pid_file)
            raise NotRunningError()
        self._await_reaper(proc.pid)
        persistence.remove_pid(self.pid_file)

    def _await_reaper(self, pid: int) -> None:
        # The reaper must finish with the old PID before a new start writes the file.
        if self.reaper is not None and self.reaper.process.pid == pid:
            self.reaper.wait(self.graceful_timeout)

    def restart(self) -> int:
        """Stops the gateway if it is running, then starts it detached."""
        try:
            self.stop()
        except NotRunningError:
            log.debug("Gateway was not running before restart.")
        return self.start()

    #* --- Health ---
    def health_check(self) -> None:
        """
        Queries the gateway's health endpoint once.

        :raises HealthCheckError: On connection errors or a non-200 answer.
        """
        url = f"http://localhost:{self.port}{default_settings.HEALTH_ENDPOINT}"
        try:
            res = self.session.get(url, timeout=default_settings.HEALTH_CHECK_TIMEOUT)
        except requests.RequestException as e:
            raise HealthCheckError(f"health check failed: {e}") from e
        if res.status_code != 200:
            raise HealthCheckError(f"health check returned {res.status_code}")

    def wait_for_healthy(self, timeout: float, interval: float = default_settings.HEALTH_POLL_INTERVAL) -> None:
        """
        Polls the health endpoint until it answers 200.

        :raises HealthCheckTimeoutError: If the gateway is not healthy within `timeout` seconds.
        """
        log.info(f"Waiting for gateway health on port {self.port}...")
        deadline = time.monotonic() + timeout
        last_error: Optional[HealthCheckError] = None
        while time.monotonic() < deadline:
            try:
                self.health_check()
                log.info("Gateway is healthy.")
                return
            except HealthCheckError as e:
                last_error = e
            time.sleep(interval)
        raise HealthCheckTimeoutError(
            f"gateway did not become healthy within {timeout}s (last error: {last_error})"
        )

    #* --- Logs ---
    def tail_logs(
        self,
        stop_event: Optional[threading.Event] = None,
        follow: bool = False,
        writer: Optional[IO[str]] = None,
    ) -> None:
        """
        Writes the gateway log to `writer`, optionally following new lines.

        In follow mode this blocks until `stop_event` is set and then returns normally.

        :raises LogNotFoundError: If the log file does not exist.
        """
        if not self.log_file.exists():
            raise LogNotFoundError(f"log file not found: {self.log_file}")
        writer = writer or sys.stdout

        if not follow:
            with open(self.log_file, 'rb') as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    background_tasks.write_raw(writer, chunk)
            return

        background_tasks.follow_log(
            self.log_file,
            stop_event or threading.Event(),
            writer,
            default_settings.LOG_FOLLOW_INTERVAL,
        )

    def clear_logs(self) -> None:
        """
        Truncates the log file.

        :raises LogNotFoundError: If there is no log file to clear.
        """
        try:
            os.truncate(self.log_file, 0)
        except FileNotFoundError as e:
            raise LogNotFoundError(f"log file not found: {self.log_file}") from e

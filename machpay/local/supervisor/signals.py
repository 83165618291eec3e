"""
Platform-specific liveness probing and termination.

Each platform provides the same three operations; `platform_signals` is
chosen once at import time and used by the supervisor for every process
it touches.
"""
import sys
import signal
import psutil


class _PosixSignals:
    """POSIX: SIGTERM for graceful stop, SIGKILL for forced stop."""

    def is_alive(self, proc: psutil.Process) -> bool:
        # An exited child that has not been reaped yet is a zombie, not a live gateway.
        try:
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def terminate(self, proc: psutil.Process) -> None:
        proc.send_signal(signal.SIGTERM)

    def force_kill(self, proc: psutil.Process) -> None:
        proc.send_signal(signal.SIGKILL)


class _WindowsSignals:
    """Windows has no SIGTERM; both stops end the process with TerminateProcess."""

    def is_alive(self, proc: psutil.Process) -> bool:
        try:
            return proc.is_running()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def terminate(self, proc: psutil.Process) -> None:
        proc.kill()

    def force_kill(self, proc: psutil.Process) -> None:
        proc.kill()


platform_signals = _WindowsSignals() if sys.platform == "win32" else _PosixSignals()

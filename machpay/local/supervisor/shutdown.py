import psutil
import logging

from machpay.local.supervisor.signals import platform_signals

log = logging.getLogger(__name__)


def _forceful_kill(proc: psutil.Process) -> None:
    try:
        log.warning(f"Killing stubborn gateway process (PID {proc.pid}).")
        platform_signals.force_kill(proc)
        psutil.wait_procs([proc], timeout=2)
    except psutil.NoSuchProcess:
        log.debug(f"Process {proc.pid} exited before it could be killed.")


def graceful_shutdown_sequence(proc: psutil.Process, timeout: float) -> bool:
    """
    Terminates a process, escalating to a forced kill after `timeout`.

    :param proc: The process to stop.
    :param timeout: Seconds to wait for a graceful exit.
    :return: True if the process exited on its own, False if it had to be killed.
    :raises psutil.NoSuchProcess: If the process was already gone before the terminate signal.
    """
    log.debug(f"Sending graceful termination to PID {proc.pid}.")
    platform_signals.terminate(proc)

    try:
        _, alive = psutil.wait_procs([proc], timeout=timeout)
    except psutil.NoSuchProcess:
        alive = []

    if alive:
        _forceful_kill(proc)
        return False
    log.info(f"Gateway process {proc.pid} terminated gracefully.")
    return True


def force_kill(proc: psutil.Process) -> None:
    """Kills a process immediately. Raises psutil.NoSuchProcess if it is already gone."""
    platform_signals.force_kill(proc)
    try:
        psutil.wait_procs([proc], timeout=2)
    except psutil.NoSuchProcess:
        pass

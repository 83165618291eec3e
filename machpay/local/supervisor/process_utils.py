import sys
import time
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import IO, Any, Dict, List, Optional

log = logging.getLogger(__name__)


#* --- Process Status & Monitoring ---
def get_process_from_pid(pid: int) -> Optional[psutil.Process]:
    """Resolves a PID to a psutil handle, or None if no such process exists."""
    try:
        return psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None


def is_gateway_process(proc: psutil.Process, binary_path: Path) -> bool:
    """
    Checks that a live process was started from the gateway binary.

    The executable or one of the first two command-line entries must be the
    binary; the second entry covers binaries run through an interpreter
    (shebang scripts). Processes we may not inspect are assumed to match.
    """
    target = Path(binary_path).resolve()
    try:
        candidates = [proc.exe()] + proc.cmdline()[:2]
    except psutil.AccessDenied:
        return True
    except psutil.NoSuchProcess:
        return False
    return any(c and Path(c).resolve() == target for c in candidates)


def process_info(proc: psutil.Process) -> Dict[str, Any]:
    """
    Collects display information about a running process.

    :return: A dict with name, status, cpu (percent), memory_mb and uptime (seconds).
    """
    try:
        with proc.oneshot():
            return {
                "name": proc.name(),
                "status": proc.status(),
                "cpu": proc.cpu_percent(interval=0.1),
                "memory_mb": proc.memory_info().rss / 1024 / 1024,
                "uptime": time.time() - proc.create_time(),
            }
    except psutil.AccessDenied:
        return {"name": "unknown", "status": "running (access denied)", "cpu": 0.0, "memory_mb": 0.0, "uptime": 0.0}


#* --- Process Creation ---
def build_args(port: int = 0, upstream: str = "", debug: bool = False) -> List[str]:
    """Returns the gateway command-line flags, omitting unset values."""
    args: List[str] = []
    if port and port > 0:
        args += ["--port", str(port)]
    if upstream:
        args += ["--upstream", upstream]
    if debug:
        args.append("--debug")
    return args


def get_popen_creation_flags(detached: bool) -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments for subprocess.Popen.

    Detached children get their own session (POSIX) or process group without
    a console (Windows) so they outlive the CLI and ignore its Ctrl+C.
    """
    if not detached:
        return {}
    if sys.platform == "win32":
        return {
            "creationflags": subprocess.DETACHED_PROCESS
            | subprocess.CREATE_NEW_PROCESS_GROUP
            | subprocess.CREATE_NO_WINDOW
        }
    return {"start_new_session": True}


def _pump_pipe(pipe: IO[bytes], writer: IO[str], process_name: str) -> None:
    """Target function for pump threads. Copies lines from a child pipe to `writer`."""
    try:
        for line_bytes in iter(pipe.readline, b""):
            writer.write(line_bytes.decode("utf-8", errors="replace"))
            writer.flush()
    except (OSError, ValueError) as e:
        log.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def stream_process_output(
    process: subprocess.Popen,
    process_name: str,
    stdout: Optional[IO[str]],
    stderr: Optional[IO[str]],
) -> List[threading.Thread]:
    """
    Starts background threads that forward a child's stdout/stderr.

    :return: The started threads, so the caller can join them after the child exits.
    """
    threads = []
    for pipe, writer, label in ((process.stdout, stdout, "stdout"), (process.stderr, stderr, "stderr")):
        if pipe is None or writer is None:
            continue
        t = threading.Thread(
            target=_pump_pipe,
            args=(pipe, writer, process_name),
            daemon=True,
            name=f"{process_name}-{label}-pump",
        )
        t.start()
        threads.append(t)
    return threads

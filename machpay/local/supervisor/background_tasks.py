import logging
import threading
import subprocess
from pathlib import Path
from typing import IO, Optional

from machpay.local.supervisor import persistence

log = logging.getLogger(__name__)


class ReaperTask:
    """
    Waits for a detached gateway to exit, then cleans up after it.

    On exit the PID file is removed (only if it still records this child)
    and the log handle held by the parent is closed. `done` is set once
    cleanup has finished.
    """

    def __init__(self, process: subprocess.Popen, pid_path: Path, log_handle: IO[bytes]) -> None:
        self.process = process
        self.pid_path = pid_path
        self.log_handle = log_handle
        self.done = threading.Event()
        self.returncode: Optional[int] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ReaperTask":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self._reap,
            daemon=True,
            name=f"GatewayReaperThread-{self.process.pid}",
        )
        self._thread.start()
        return self

    def _reap(self) -> None:
        try:
            self.returncode = self.process.wait()
            log.info(f"Gateway process {self.process.pid} exited with status {self.returncode}.")
        finally:
            self.log_handle.close()
            persistence.remove_pid(self.pid_path, only_if=self.process.pid)
            self.done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)


def write_raw(writer: IO[str], data: bytes) -> None:
    """
    Writes log bytes to a text stream without re-encoding them.

    Streams backed by a byte buffer (stdout, files) receive the bytes as-is;
    purely in-memory text streams get a lenient UTF-8 decode instead.
    """
    if not data:
        return
    buffer = getattr(writer, "buffer", None)
    if buffer is not None:
        writer.flush()
        buffer.write(data)
        buffer.flush()
    else:
        writer.write(data.decode("utf-8", errors="replace"))
        writer.flush()


def follow_log(log_path: Path, stop_event: threading.Event, writer: IO[str], interval: float) -> None:
    """
    Copies the log file to `writer`, then keeps forwarding new lines.

    Runs until `stop_event` is set. A partially written last line is held
    back until its newline arrives.
    """
    with open(log_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b""):
            write_raw(writer, chunk)
        pending = b""
        while not stop_event.is_set():
            line = f.readline()
            if not line:
                stop_event.wait(interval)
                continue
            pending += line
            if pending.endswith(b"\n"):
                write_raw(writer, pending)
                pending = b""

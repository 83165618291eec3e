"""
Terminal progress indicators used by the installer and the console.

- `ProgressReader` wraps a byte stream of known size and draws a bar.
- `Spinner` animates on a background thread for work of unknown length.
- `StepProgress` prints `[n/total]` lines for multi-step operations.
"""
import time
import threading
from typing import BinaryIO, Optional, TextIO

BAR_WIDTH = 40
SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
SPINNER_INTERVAL = 0.08
MB = 1024 * 1024


class ProgressReader:
    """
    Wraps a readable byte stream and renders download progress to `writer`.

    The bar is only redrawn when the integer percentage changes, so a fast
    link produces at most ~100 redraws regardless of chunk size.
    """

    def __init__(self, reader: BinaryIO, total: int, writer: TextIO) -> None:
        self.reader = reader
        self.total = total
        self.current = 0
        self.writer = writer
        self._last_pct = 0
        self._started = time.monotonic()
        self._lock = threading.Lock()

    @property
    def percent(self) -> int:
        return self._last_pct

    def read(self, size: int = -1) -> bytes:
        data = self.reader.read(size)
        with self._lock:
            self.current += len(data)
            pct = int(self.current * 100 / self.total) if self.total > 0 else 0
            if pct != self._last_pct:
                self._last_pct = pct
                self._render()
        return data

    def _render(self) -> None:
        filled = min(BAR_WIDTH, int(BAR_WIDTH * self.current / self.total))
        bar = "█" * filled + "░" * (BAR_WIDTH - filled)

        elapsed = max(time.monotonic() - self._started, 1e-6)
        speed = self.current / elapsed / MB

        self.writer.write(
            f"\r  {bar} {self._last_pct:3d}%  {self.current / MB:.1f}/{self.total / MB:.1f} MB  ({speed:.1f} MB/s)"
        )
        if self.current >= self.total:
            self.writer.write("\n")
        self.writer.flush()

    def finish(self) -> None:
        """Forces the bar to 100% if the stream ended short of the expected size."""
        with self._lock:
            if self.total > 0 and self._last_pct < 100:
                self._last_pct = 100
                self.current = self.total
                self._render()


class Spinner:
    """Indeterminate progress indicator drawn by a background thread."""

    def __init__(self, writer: TextIO, message: str) -> None:
        self.writer = writer
        self.message = message
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def start(self) -> "Spinner":
        """Starts the animation. Calling it on a running spinner does nothing."""
        with self._lock:
            if self._thread is not None:
                return self
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._animate,
                args=(self._stop_event, self.message),
                daemon=True,
                name="SpinnerThread",
            )
            self._thread.start()
        return self

    def _animate(self, stop_event: threading.Event, message: str) -> None:
        idx = 0
        while not stop_event.is_set():
            frame = SPINNER_FRAMES[idx % len(SPINNER_FRAMES)]
            self.writer.write(f"\r  {frame} {message}")
            self.writer.flush()
            idx += 1
            stop_event.wait(SPINNER_INTERVAL)

    def _halt(self) -> bool:
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._thread = None
            self._stop_event.set()
        # The final line must not interleave with a frame still being drawn.
        thread.join()
        return True

    def stop(self, success: bool = True) -> None:
        """Stops the animation and prints a ✓/✗ line. No-op if not running."""
        self.stop_with_message(success, self.message)

    def stop_with_message(self, success: bool, message: str) -> None:
        if not self._halt():
            return
        glyph = "✓" if success else "✗"
        self.writer.write(f"\r  {glyph} {message}\n")
        self.writer.flush()

    def __enter__(self) -> "Spinner":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop(success=exc_type is None)


class StepProgress:
    """Prints numbered steps for operations with a known number of phases."""

    def __init__(self, writer: TextIO, total: int) -> None:
        self.writer = writer
        self.total = total
        self.current = 0
        self.step_name = ""

    def step(self, name: str) -> None:
        self.current += 1
        self.step_name = name
        self.writer.write(f"  [{self.current}/{self.total}] {name}\n")
        self.writer.flush()

    def complete(self) -> None:
        self.writer.write(f"  ✓ All {self.total} steps complete\n")
        self.writer.flush()

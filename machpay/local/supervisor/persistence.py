import logging
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)


def read_pid(pid_path: Path) -> Optional[int]:
    """
    Reads the PID file from disk.

    :param pid_path: The PID file location.
    :return: The recorded PID, or None if the file is missing or not a positive integer.
    """
    try:
        content = pid_path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning(f"Could not read PID file '{pid_path}': {e}")
        return None

    try:
        pid = int(content)
    except ValueError:
        log.warning(f"PID file '{pid_path}' is malformed: {content!r}")
        return None
    return pid if pid > 0 else None


def write_pid(pid_path: Path, pid: int) -> None:
    """
    Atomically writes `pid` as decimal text to the PID file.

    :raises OSError: If the file cannot be written.
    """
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    temp_pid_path = pid_path.with_suffix(".tmp")
    try:
        temp_pid_path.write_text(str(pid))
        temp_pid_path.replace(pid_path)
    finally:
        temp_pid_path.unlink(missing_ok=True)
    log.debug(f"Recorded gateway PID {pid} in '{pid_path}'.")


def remove_pid(pid_path: Path, only_if: Optional[int] = None) -> None:
    """
    Removes the PID file.

    :param only_if: When given, the file is only removed if it still records this PID.
    """
    if only_if is not None and read_pid(pid_path) != only_if:
        return
    pid_path.unlink(missing_ok=True)
    log.debug(f"Removed PID file '{pid_path}'.")

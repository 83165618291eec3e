import os
import stat
import shutil
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterator, Tuple

from machpay.local.errors import BinaryNotFoundInArchiveError, InstallError

log = logging.getLogger(__name__)


def _tar_members(archive_path: Path) -> Iterator[Tuple[str, BinaryIO]]:
    with tarfile.open(archive_path, "r:gz") as tf:
        for member in tf:
            # Directories, symlinks, hard links and devices are never the binary.
            if not member.isreg():
                continue
            stream = tf.extractfile(member)
            if stream is not None:
                yield member.name, stream


def _zip_members(archive_path: Path) -> Iterator[Tuple[str, BinaryIO]]:
    with zipfile.ZipFile(archive_path, "r") as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            # Unix-made archives keep st_mode in the high bits; zero means no type recorded.
            file_type = stat.S_IFMT(info.external_attr >> 16)
            if file_type and file_type != stat.S_IFREG:
                continue
            with zf.open(info) as stream:
                yield info.filename, stream


def extract_binary(archive_path: Path, binary_name: str, dest_path: Path) -> str:
    """
    Writes the gateway executable contained in `archive_path` to `dest_path`.

    Only the first regular file whose base name starts with `binary_name`
    is written; auxiliary files such as LICENSE or README are skipped.

    :param archive_path: A `.tar.gz` or `.zip` release archive.
    :param binary_name: The expected executable name prefix.
    :param dest_path: Where to write the extracted file.
    :return: The archive member name that was extracted.
    :raises BinaryNotFoundInArchiveError: If no member matches.
    :raises InstallError: If the archive is corrupt or the write fails.
    """
    is_zip = archive_path.name.endswith(".zip")
    members = _zip_members(archive_path) if is_zip else _tar_members(archive_path)

    log.info(f"Extracting '{binary_name}' from '{archive_path.name}'...")
    try:
        for member_name, stream in members:
            if not os.path.basename(member_name).startswith(binary_name):
                continue
            with open(dest_path, "wb") as out:
                shutil.copyfileobj(stream, out)
            log.debug(f"Extracted archive member '{member_name}' to '{dest_path}'.")
            return member_name
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise InstallError(f"read archive: {e}") from e
    except OSError as e:
        raise InstallError(f"write binary: {e}") from e
    finally:
        members.close()

    raise BinaryNotFoundInArchiveError(f"binary '{binary_name}' not found in archive {archive_path.name}")

import os
import stat
import shutil
import hashlib
import logging
import platform
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TextIO, Tuple

import requests

import machpay.settings as default_settings
from machpay.local.console.progress import ProgressReader
from machpay.local.errors import (
    AssetNotFoundError,
    ChecksumMismatchError,
    DownloadError,
    GatewayError,
    InstallError,
    NotInstalledError,
    RegistryError,
    VersionParseError,
)
from machpay.local.external import archive, versioning
from machpay.local.external.registry import Release, ReleaseRegistry

log = logging.getLogger(__name__)

_OS_NAMES = {"linux": "linux", "darwin": "darwin", "windows": "windows", "freebsd": "freebsd"}
_ARCH_NAMES = {
    "x86_64": "amd64", "amd64": "amd64",
    "aarch64": "arm64", "arm64": "arm64",
    "i386": "386", "i686": "386", "x86": "386",
    "armv7l": "arm", "armv6l": "arm",
}


def detect_platform() -> Tuple[str, str]:
    """Returns the (os, arch) pair using the release naming convention."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    return _OS_NAMES.get(system, system), _ARCH_NAMES.get(machine, machine)


def file_checksum(path: Path) -> str:
    """Returns the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_checksum_manifest(text: str, asset_name: str) -> Optional[str]:
    """Finds the digest for `asset_name` in `<digest>  <filename>` lines."""
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1].lstrip("*") == asset_name:
            return parts[0].lower()
    return None


@dataclass(frozen=True)
class InstallResult:
    """Outcome of a successful `GatewayInstaller.download` call."""
    version: str
    path: Path
    verified: bool
    warning: str = ""


class GatewayInstaller:
    """Resolves, downloads, verifies and installs the gateway binary."""

    def __init__(
        self,
        install_dir: Optional[Path] = None,
        registry: Optional[ReleaseRegistry] = None,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> None:
        self.install_dir = Path(install_dir) if install_dir else default_settings.BIN_DIR
        self.registry = registry or ReleaseRegistry()
        detected_os, detected_arch = detect_platform()
        self.os_name = os_name or detected_os
        self.arch = arch or detected_arch
        # Downloads and partial extractions live here until they are moved into place.
        self.temp_dir = self.install_dir / ".temp"

    @property
    def session(self) -> requests.Session:
        return self.registry.session

    @property
    def binary_path(self) -> Path:
        binary = default_settings.GATEWAY_BINARY
        if self.os_name == "windows":
            binary += ".exe"
        return self.install_dir / binary

    def asset_name(self) -> str:
        """Returns the expected archive name, e.g. machpay-gateway_linux_amd64.tar.gz."""
        ext = "zip" if self.os_name == "windows" else "tar.gz"
        return f"{default_settings.GATEWAY_BINARY}_{self.os_name}_{self.arch}.{ext}"

    #* --- Installed Binary ---
    def is_installed(self) -> bool:
        return self.binary_path.is_file()

    def installed_version(self) -> str:
        """
        Asks the installed binary for its version.

        :return: The version without a leading 'v' (e.g. '1.2.0').
        :raises NotInstalledError: If no binary is installed.
        :raises VersionParseError: If the output contains no version token.
        """
        if not self.is_installed():
            raise NotInstalledError(f"gateway not installed at {self.binary_path}")

        try:
            res = subprocess.run(
                [str(self.binary_path), "--version"],
                capture_output=True, text=True, timeout=10, check=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise GatewayError(f"get version: {e}") from e

        output = res.stdout.strip()
        version = versioning.parse_version_output(output)
        if version is None:
            raise VersionParseError(f"unable to parse version from: {output!r}")
        return version

    #* --- Registry ---
    def get_latest_release(self) -> Release:
        return self.registry.get_latest_release()

    def get_release(self, tag: str) -> Release:
        return self.registry.get_release(tag)

    def needs_update(self) -> Tuple[bool, str]:
        """
        Reports whether the installed gateway differs from the latest release.

        A missing binary, or one that cannot report its version (unreadable
        output, wrong architecture, non-zero exit), counts as needing an
        update so a reinstall repairs it; the registry is not queried then.

        :return: (needs_update, latest_version). latest_version is '' when not installed.
        :raises RegistryError: If the latest release cannot be fetched.
        """
        try:
            installed = self.installed_version()
        except GatewayError as e:
            log.debug(f"Treating gateway as not installed: {e}")
            return True, ""

        try:
            release = self.get_latest_release()
        except RegistryError as e:
            raise type(e)(f"check for updates: {e}", status_code=e.status_code) from e

        latest = release.version
        return versioning.compare_versions(installed, latest) != 0, latest

    #* --- Download & Install ---
    def download(self, version: str, progress: Optional[TextIO] = None) -> InstallResult:
        """
        Downloads, verifies and installs the given gateway version.

        Nothing is written to the install path unless the download completed
        and, when a checksum manifest is published, its digest matched.

        :param version: A version or tag, with or without the leading 'v'.
        :param progress: Optional text stream for the progress bar and status lines.
        :return: An InstallResult; `verified` is False if no manifest was available.
        :raises AssetNotFoundError: If the release has no asset for this platform.
        :raises ChecksumMismatchError: If the digest does not match the manifest.
        """
        tag = versioning.normalize_tag(version)
        asset_name = self.asset_name()

        release = self.get_release(tag)

        asset = release.find_asset(asset_name)
        if asset is None or not asset.download_url:
            raise AssetNotFoundError(
                f"no asset found for {self.os_name}/{self.arch} (looking for {asset_name})"
            )

        warning = ""
        expected_checksum = None
        manifest = release.find_asset(default_settings.CHECKSUM_ASSET_NAME)
        if manifest is None:
            warning = f"No {default_settings.CHECKSUM_ASSET_NAME} published for {tag}; installing unverified."
        else:
            try:
                expected_checksum = parse_checksum_manifest(
                    self.registry.fetch_text(manifest.download_url), asset_name
                )
                if expected_checksum is None:
                    warning = f"checksum not found for {asset_name}; installing unverified."
            except RegistryError as e:
                warning = f"Could not fetch checksum: {e}"

        if warning:
            log.warning(warning)
            _emit(progress, f"  Warning: {warning}\n")

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        archive_path = self.temp_dir / asset_name
        try:
            self._download_file(asset.download_url, asset.size, archive_path, progress)

            if expected_checksum:
                actual_checksum = file_checksum(archive_path)
                if actual_checksum != expected_checksum:
                    log.error(f"Checksum mismatch for {asset_name}; refusing to install.")
                    raise ChecksumMismatchError(expected_checksum, actual_checksum)
                log.info(f"Checksum verified for {asset_name}.")
                _emit(progress, "  ✓ Checksum verified\n")

            self._extract_and_install(archive_path)
        finally:
            shutil.rmtree(self.temp_dir, ignore_errors=True)

        _emit(progress, f"  ✓ Installed to {self.binary_path}\n")
        log.info(f"Gateway {tag} installed to '{self.binary_path}'.")
        return InstallResult(
            version=versioning.strip_v(tag),
            path=self.binary_path,
            verified=expected_checksum is not None,
            warning=warning,
        )

    def _download_file(self, url: str, size: int, dest_path: Path, progress: Optional[TextIO]) -> None:
        """Streams `url` to `dest_path`, feeding byte counts to the progress bar."""
        log.info(f"Downloading from {url}...")
        try:
            with self.session.get(
                url,
                stream=True,
                timeout=default_settings.DOWNLOAD_TIMEOUT,
                headers={"User-Agent": default_settings.USER_AGENT},
            ) as r:
                if r.status_code != 200:
                    raise DownloadError(f"download failed: HTTP {r.status_code}")

                total_size = int(r.headers.get("content-length") or 0) or size
                r.raw.decode_content = True
                reader = r.raw
                if progress is not None and total_size > 0:
                    reader = ProgressReader(r.raw, total_size, progress)

                with open(dest_path, "wb") as f:
                    shutil.copyfileobj(reader, f, 65536)

                if isinstance(reader, ProgressReader):
                    reader.finish()
        except requests.RequestException as e:
            dest_path.unlink(missing_ok=True)
            raise DownloadError(f"download interrupted: {e}") from e
        except OSError as e:
            dest_path.unlink(missing_ok=True)
            raise DownloadError(f"write {dest_path}: {e}") from e

        log.info(f"Successfully downloaded to '{dest_path}'.")

    def _extract_and_install(self, archive_path: Path) -> None:
        """Extracts the binary next to its final path, then swaps it in atomically."""
        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallError(f"create install dir: {e}") from e

        staged_path = self.temp_dir / (self.binary_path.name + ".partial")
        archive.extract_binary(archive_path, default_settings.GATEWAY_BINARY, staged_path)

        try:
            if self.os_name != "windows":
                mode = os.stat(staged_path).st_mode
                os.chmod(staged_path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH | stat.S_IRUSR)
            os.replace(staged_path, self.binary_path)
        except OSError as e:
            staged_path.unlink(missing_ok=True)
            raise InstallError(f"install binary: {e}") from e


def _emit(progress: Optional[TextIO], text: str) -> None:
    if progress is not None:
        progress.write(text)
        progress.flush()

"""Helpers for reading and comparing gateway version strings."""
import re
from typing import Optional

from packaging.version import InvalidVersion, Version

_VERSION_TOKEN = re.compile(r"^\d+(\.\d+)*([-+._]?[0-9A-Za-z][0-9A-Za-z.+-]*)?$")


def strip_v(version: str) -> str:
    version = version.strip()
    return version[1:] if version[:1] in ("v", "V") else version


def normalize_tag(version: str) -> str:
    """Returns the registry tag for a version, e.g. '1.2.0' -> 'v1.2.0'."""
    version = version.strip()
    return version if version.startswith("v") else f"v{version}"


def parse_version_output(output: str) -> Optional[str]:
    """
    Extracts the version from `<binary> --version` output.

    Accepts "machpay-gateway v1.2.0", "v1.2.0" or "1.2.0". The last token
    that looks like a version wins.

    :return: The version without a leading 'v', or None if nothing matched.
    """
    for token in reversed(output.split()):
        candidate = strip_v(token)
        if _VERSION_TOKEN.match(candidate):
            return candidate
    return None


def compare_versions(current: str, candidate: str) -> int:
    """
    Compares `candidate` against `current`.

    Returns 1 when `candidate` is newer, -1 when older and 0 when equal.
    Strings `packaging` cannot parse fall back to plain string ordering.
    """
    current, candidate = strip_v(current), strip_v(candidate)
    if current == candidate:
        return 0
    try:
        current_parsed, candidate_parsed = Version(current), Version(candidate)
    except InvalidVersion:
        return 1 if candidate > current else -1
    if candidate_parsed == current_parsed:
        return 0
    return 1 if candidate_parsed > current_parsed else -1

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import requests

import machpay.settings as default_settings
from machpay.local.errors import NotFoundError, ParseError, RegistryError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Asset:
    """One downloadable file attached to a release."""
    name: str
    size: int
    download_url: str


@dataclass(frozen=True)
class Release:
    """An immutable release descriptor as published by the registry."""
    tag_name: str
    name: str = ""
    published_at: Optional[datetime] = None
    assets: Tuple[Asset, ...] = field(default_factory=tuple)

    @property
    def version(self) -> str:
        """The tag without its leading 'v'."""
        return self.tag_name[1:] if self.tag_name.startswith("v") else self.tag_name

    def find_asset(self, name: str) -> Optional[Asset]:
        return next((a for a in self.assets if a.name == name), None)

    @classmethod
    def from_json(cls, payload: Any) -> "Release":
        """
        Builds a Release from a GitHub release object.

        :param payload: The decoded JSON body.
        :return: The parsed release.
        :raises ParseError: If required fields are missing or mistyped.
        """
        if not isinstance(payload, dict):
            raise ParseError("parse release: expected a JSON object")

        tag_name = payload.get("tag_name")
        if not isinstance(tag_name, str) or not tag_name:
            raise ParseError("parse release: missing tag_name")

        raw_assets = payload.get("assets") or []
        if not isinstance(raw_assets, list):
            raise ParseError("parse release: assets is not a list")

        assets = []
        for raw in raw_assets:
            if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
                raise ParseError("parse release: malformed asset entry")
            try:
                size = int(raw.get("size") or 0)
            except (TypeError, ValueError) as e:
                raise ParseError(f"parse release: bad size for asset {raw['name']}: {e}") from e
            assets.append(Asset(
                name=raw["name"],
                size=size,
                download_url=raw.get("browser_download_url") or "",
            ))

        return cls(
            tag_name=tag_name,
            name=payload.get("name") or "",
            published_at=_parse_timestamp(payload.get("published_at")),
            assets=tuple(assets),
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.debug(f"Ignoring unparseable published_at '{value}'.")
        return None


class ReleaseRegistry:
    """Client for the GitHub Releases API of the gateway repository."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        api_url: str = default_settings.GITHUB_API,
        repo: str = default_settings.GATEWAY_REPO,
        timeout: float = default_settings.HTTP_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip("/")
        self.repo = repo
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Accept": default_settings.GITHUB_ACCEPT,
            "User-Agent": default_settings.USER_AGENT,
        }

    def get_latest_release(self) -> Release:
        """
        Fetches the newest published release.

        :raises NotFoundError: If the repository has no releases.
        :raises RegistryError: On transport errors or other non-2xx answers.
        :raises ParseError: If the body is not a valid release.
        """
        url = f"{self.api_url}/repos/{self.repo}/releases/latest"
        return self._fetch_release(url, f"no releases found for {self.repo}")

    def get_release(self, tag: str) -> Release:
        """Fetches the release with the given tag (e.g. 'v1.2.0')."""
        url = f"{self.api_url}/repos/{self.repo}/releases/tags/{tag}"
        return self._fetch_release(url, f"release {tag} not found")

    def _fetch_release(self, url: str, not_found_message: str) -> Release:
        log.debug(f"Querying release registry: {url}")
        try:
            res = self.session.get(url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise RegistryError(f"fetch release: {e}") from e

        if res.status_code == 404:
            raise NotFoundError(not_found_message, status_code=404)
        if not 200 <= res.status_code < 300:
            raise RegistryError(
                f"GitHub API error: {res.status_code} {getattr(res, 'reason', '')}".rstrip(),
                status_code=res.status_code,
            )

        try:
            payload = res.json()
        except ValueError as e:
            raise ParseError(f"parse release: {e}") from e

        release = Release.from_json(payload)
        log.debug(f"Resolved release {release.tag_name} with {len(release.assets)} assets.")
        return release

    def fetch_text(self, url: str) -> str:
        """Fetches a small text asset such as the checksum manifest."""
        try:
            res = self.session.get(url, headers={"User-Agent": default_settings.USER_AGENT}, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as e:
            raise RegistryError(f"fetch {url}: {e}") from e
        return res.text

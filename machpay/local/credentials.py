import json
import time
import logging
from pathlib import Path
from typing import Optional

import machpay.settings as default_settings

log = logging.getLogger(__name__)


class CredentialStore:
    """
    Read-only view of the token written by the login flow.

    The file holds `{"access_token": "...", "expires_at": <unix seconds>}`.
    A missing, unreadable or expired token simply means "not authenticated".
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else default_settings.CREDENTIALS_PATH

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Could not read credentials from '{self.path}': {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def access_token(self) -> Optional[str]:
        """Returns the current access token, or None if absent or expired."""
        data = self._load()
        token = data.get("access_token")
        if not token:
            return None
        expires_at = data.get("expires_at")
        if expires_at:
            try:
                expired = float(expires_at) <= time.time()
            except (TypeError, ValueError):
                log.warning(f"Credentials in '{self.path}' have an unreadable expiry: {expires_at!r}")
                return None
            if expired:
                log.debug("Stored access token has expired.")
                return None
        return token

    def is_authenticated(self) -> bool:
        return self.access_token() is not None

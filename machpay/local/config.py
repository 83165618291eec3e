import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

import machpay.settings as default_settings

log = logging.getLogger(__name__)


class GatewayConfig:
    """
    The user's persisted CLI configuration, merged over the defaults.

    Precedence is:
    1. Defaults from `settings.py` (which already honour `MACHPAY_*` env vars).
    2. Values from `config.yaml`, restricted to `MODIFIABLE_SETTINGS`.

    The supervisor never reads this object itself; the console reads the
    port, upstream and debug fields and hands them to the `ProcessManager`.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path: Path = Path(path) if path else default_settings.CONFIG_YAML_PATH
        self.role: str = ""
        self.network: str = "mainnet"
        self.upstream_url: str = default_settings.UPSTREAM_URL
        self.port: int = default_settings.GATEWAY_PORT
        self.debug: bool = default_settings.GATEWAY_DEBUG
        self._load_overrides()

    def _load_overrides(self) -> None:
        """Applies whitelisted keys from the YAML file, ignoring everything else."""
        if not self.path.exists():
            return

        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            log.error(f"Failed to load or parse config file '{self.path}': {e}")
            return

        if not isinstance(data, dict):
            log.error(f"Config file '{self.path}' is not a mapping. Ignoring.")
            return

        for key, value in data.items():
            if key not in default_settings.MODIFIABLE_SETTINGS:
                log.warning(f"Unknown config key '{key}' in '{self.path}'. Ignoring.")
                continue
            try:
                self._apply(key, value)
            except (TypeError, ValueError) as e:
                log.warning(f"Invalid value for '{key}' in '{self.path}': {e}")

    def _apply(self, key: str, value: Any) -> None:
        """Coerces `value` to the type of the current setting and stores it."""
        original_value = getattr(self, key)
        if isinstance(original_value, bool):
            new_value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
        elif value is None:
            new_value = type(original_value)()
        else:
            new_value = type(original_value)(value)
        setattr(self, key, new_value)

    def set(self, key: str, value: Any) -> None:
        """
        Updates a single setting and persists the file.

        :param key: One of `MODIFIABLE_SETTINGS`.
        :param value: The raw value, coerced to the setting's type.
        :raises KeyError: If the key is not modifiable.
        """
        if key not in default_settings.MODIFIABLE_SETTINGS:
            raise KeyError(f"Setting '{key}' is not modifiable.")
        self._apply(key, value)
        self.save()

    def as_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in sorted(default_settings.MODIFIABLE_SETTINGS)}

    def save(self) -> None:
        """Writes the modifiable settings to the YAML file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open('w', encoding='utf-8') as f:
            yaml.safe_dump(self.as_dict(), f, default_flow_style=False)
        log.info(f"Configuration saved to {self.path}")

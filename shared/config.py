from __future__ import annotations
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional
import os

import yaml

from shared.log import get_logger
from shared.utils import is_jid

logger = get_logger(__name__)

DEFAULT_PORT = 5222

# environment variable → settings field
_ENV_OVERRIDES: Dict[str, str] = {
    "JIBRI_QUEUE_ACCOUNT": "account_jid",
    "JIBRI_QUEUE_PASSWORD": "password",
    "JIBRI_QUEUE_HOST": "host",
    "JIBRI_QUEUE_PORT": "port",
    "JIBRI_QUEUE_JID": "queue_jid",
    "JIBRI_QUEUE_ROOM": "room_jid",
    "JIBRI_QUEUE_IQ_TIMEOUT": "iq_timeout",
    "JIBRI_QUEUE_RESET_ON_LEAVE": "reset_membership_on_leave",
    "JIBRI_QUEUE_LOG_LEVEL": "log_level",
}

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when the settings file or an override is invalid."""
    pass


@dataclass
class QueueSettings:
    """
    Client settings. Every field can come from the YAML file:

        account_jid: recorder@meet.example.com
        password: secret
        host: xmpp.meet.example.com
        port: 5222
        queue_jid: jibriqueue@auth.meet.example.com
        room_jid: lobby@conference.meet.example.com
        iq_timeout: 15
        reset_membership_on_leave: false
        log_level: DEBUG

    and be overridden by JIBRI_QUEUE_* environment variables.
    """
    # our own account; slixmpp authenticates and binds a resource for it
    account_jid: Optional[str] = None
    password: Optional[str] = None
    # None resolves the account domain
    host: Optional[str] = None
    port: int = DEFAULT_PORT
    queue_jid: Optional[str] = None
    room_jid: Optional[str] = None
    iq_timeout: Optional[float] = 15.0
    # leave() keeps the membership flag set unless this is enabled
    reset_membership_on_leave: bool = False
    log_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueSettings':
        known = {f.name for f in fields(cls)}
        unknown = set(data.keys()) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {sorted(unknown)}")

        settings = cls()
        for key, value in data.items():
            setattr(settings, key, _coerce(key, value))
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def effective_iq_timeout(self) -> Optional[float]:
        """None when unset, zero or negative; slixmpp's own iq timeout applies then."""
        if self.iq_timeout is None or self.iq_timeout <= 0:
            return None
        return self.iq_timeout


def _coerce(key: str, value: Any) -> Any:
    """Validate one setting, converting strings coming from the environment"""
    if key == "iq_timeout":
        if value is None:
            return None
        if isinstance(value, bool):
            raise ConfigError("'iq_timeout' must be a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'iq_timeout' must be a number, got {value!r}")

    if key == "reset_membership_on_leave":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in _TRUE_STRINGS | _FALSE_STRINGS:
            return value.lower() in _TRUE_STRINGS
        raise ConfigError(f"'reset_membership_on_leave' must be a boolean, got {value!r}")

    if key == "port":
        if isinstance(value, bool):
            raise ConfigError("'port' must be an integer")
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'port' must be an integer, got {value!r}")
        if not 0 < port < 65536:
            raise ConfigError(f"'port' out of range: {port}")
        return port

    if value is not None and not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string")
    if key in ("account_jid", "queue_jid", "room_jid") and value is not None and not is_jid(value):
        raise ConfigError(f"'{key}' is not a valid JID: {value!r}")
    return value


def load_settings(path: Optional[Path] = None) -> QueueSettings:
    """
    Load settings from an optional YAML file, then apply environment overrides.

    Args:
        path: YAML file; a missing file is an error only when given explicitly

    Returns:
        QueueSettings
    """
    data: Dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}")
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping")
        data.update(loaded)
        logger.debug("Loaded settings from %s", path)

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            data[key] = value

    return QueueSettings.from_dict(data)

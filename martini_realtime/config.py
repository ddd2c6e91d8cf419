"""
Configuration for the realtime sync core.

Defaults mirror the production service. Values can be overridden from
``MARTINI_*`` environment variables or from the ``realtime:`` section of a
YAML settings file:

```yaml
realtime:
  developer_mode: true
  reconnect_delay: 2.0
  ping_interval: 8.0
  ping_timeout: 7.0
  back_online_delay: 3.0
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from yarl import URL

from .exceptions import ConfigurationError, InvalidTargetError

PRODUCTION_BASE_URL = "https://trymartini.com"
STAGING_BASE_URL = "https://dev.staging.trymartini.com"

DEFAULT_SETTINGS_PATH = Path.home() / ".martini" / "settings.yaml"

TIMING_FIELDS = ("reconnect_delay", "ping_interval", "ping_timeout", "back_online_delay")


@dataclass
class RealtimeConfig:
    """Endpoints and timing for the stream session and health monitor."""

    base_url: str = PRODUCTION_BASE_URL
    staging_base_url: str = STAGING_BASE_URL
    developer_mode: bool = False
    realtime_path: str = "/scripts/sub/project.php"
    ping_path: str = "/scripts/"

    # Seconds
    reconnect_delay: float = 2.0
    ping_interval: float = 8.0
    ping_timeout: float = 7.0  # must stay below ping_interval
    back_online_delay: float = 3.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check timing invariants.

        Raises:
            ConfigurationError: If a delay is not positive or probes could overlap
        """
        for name in TIMING_FIELDS:
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(name, "must be positive", str(value))
        if self.ping_timeout >= self.ping_interval:
            raise ConfigurationError(
                "ping_timeout",
                f"must be less than ping_interval ({self.ping_interval})",
                str(self.ping_timeout),
            )

    @property
    def active_base_url(self) -> str:
        return self.staging_base_url if self.developer_mode else self.base_url

    @property
    def ping_url(self) -> str:
        return str(URL(self.active_base_url).join(URL(self.ping_path)))

    def realtime_url(self, project_id: str) -> str:
        """Build the event-stream URL for a project.

        Raises:
            InvalidTargetError: If the base URL or project id cannot form a valid URL
        """
        if not project_id or not project_id.strip():
            raise InvalidTargetError(project_id, "empty project id")

        try:
            base = URL(self.active_base_url)
        except (TypeError, ValueError) as e:
            raise InvalidTargetError(project_id, str(e)) from e

        if base.scheme not in ("http", "https") or not base.host:
            raise InvalidTargetError(project_id, f"unsupported base URL {self.active_base_url!r}")

        return str(base.join(URL(self.realtime_path)).with_query(projectId=project_id))

    @classmethod
    def from_env(cls) -> RealtimeConfig:
        """Create config from environment variables."""
        overrides: dict[str, Any] = {}

        if base_url := os.environ.get("MARTINI_BASE_URL"):
            overrides["base_url"] = base_url
        if staging := os.environ.get("MARTINI_STAGING_BASE_URL"):
            overrides["staging_base_url"] = staging
        if developer_mode := os.environ.get("MARTINI_DEVELOPER_MODE"):
            overrides["developer_mode"] = developer_mode.lower() in ("1", "true", "yes")

        for name, env_var in (
            ("reconnect_delay", "MARTINI_RECONNECT_DELAY"),
            ("ping_interval", "MARTINI_PING_INTERVAL"),
            ("ping_timeout", "MARTINI_PING_TIMEOUT"),
            ("back_online_delay", "MARTINI_BACK_ONLINE_DELAY"),
        ):
            raw = os.environ.get(env_var)
            if raw is None:
                continue
            try:
                overrides[name] = float(raw)
            except ValueError as e:
                raise ConfigurationError(name, f"{env_var} is not a number", raw) from e

        return cls(**overrides)

    @classmethod
    def from_file(cls, config_path: Path | None = None) -> RealtimeConfig:
        """Create config from the ``realtime`` section of a YAML settings file.

        A missing file or section yields the defaults.
        """
        path = config_path or DEFAULT_SETTINGS_PATH
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                settings = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("settings", f"cannot parse {path}: {e}") from e

        section = settings.get("realtime") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("realtime", "section must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(section) - known
        if unknown:
            raise ConfigurationError("realtime", f"unknown keys: {', '.join(sorted(unknown))}")

        overrides = dict(section)
        for name in TIMING_FIELDS:
            if name not in overrides:
                continue
            raw = overrides[name]
            if isinstance(raw, bool):
                raise ConfigurationError(name, "must be a number of seconds", str(raw))
            try:
                overrides[name] = float(raw)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(name, "must be a number of seconds", str(raw)) from e

        return cls(**overrides)

"""Configuration for the presence relay.

Simple configuration loader from environment variables. A ``.env`` file in
the working directory is read first (without overriding real variables).
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(name: str, default: str, cast=float):
    value = os.getenv(name, default)
    try:
        return cast(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{value}'") from None


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    load_dotenv()
    return {
        # Upstream session
        "GATHER_API_KEY": os.getenv("GATHER_API_KEY", ""),
        "SPACE_ID": os.getenv("SPACE_ID", ""),
        "GATHER_WS_URL": os.getenv("GATHER_WS_URL", "wss://gather.town/api"),

        # Webhook sink (PIPEDREAM_WEBHOOK_URL kept for existing deployments)
        "WEBHOOK_URL": os.getenv("RELAY_WEBHOOK_URL", os.getenv("PIPEDREAM_WEBHOOK_URL", "")),
        "WEBHOOK_FLUSH_SECONDS": _number("RELAY_WEBHOOK_FLUSH_SECONDS", "10"),

        # Append log sink (spreadsheet)
        "SHEETS_SPREADSHEET_ID": os.getenv("SHEETS_SPREADSHEET_ID", ""),
        "SHEETS_TABLE": os.getenv("SHEETS_TABLE", ""),
        "SHEETS_TOKEN": os.getenv("SHEETS_TOKEN", ""),
        "SHEETS_BASE_URL": os.getenv("SHEETS_BASE_URL", "https://sheets.googleapis.com/v4"),
        "SHEETS_INCLUDE_NAME": _flag(os.getenv("SHEETS_INCLUDE_NAME", "true")),
        "APPEND_FLUSH_SECONDS": _number("RELAY_APPEND_FLUSH_SECONDS", "300"),

        # Connection supervision
        "RECONNECT_SECONDS": _number("RELAY_RECONNECT_SECONDS", "5"),
        "BACKOFF": os.getenv("RELAY_BACKOFF", "fixed").lower(),
        "MAX_RECONNECT_SECONDS": _number("RELAY_MAX_RECONNECT_SECONDS", "60"),
        "KEEPALIVE_SECONDS": _number("RELAY_KEEPALIVE_SECONDS", "20"),
        "SNAPSHOT_TIMEOUT": _number("RELAY_SNAPSHOT_TIMEOUT", "5"),
        "IDENTITY_TIMEOUT": _number("RELAY_IDENTITY_TIMEOUT", "4.5"),

        # HTTP server
        "INSPECT_TOKEN": os.getenv("RELAY_INSPECT_TOKEN", ""),
        "HOST": os.getenv("HOST", "127.0.0.1"),
        "PORT": _number("PORT", "8090", int),
    }


def get_config_value(key: str, default: Optional[str] = None):
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)


def require_config_value(key: str) -> str:
    """Get a required configuration value, raising if not found."""
    value = get_config_value(key)
    if not value:
        raise ConfigError(f"Required configuration '{key}' is not set")
    return value


@dataclass
class RelaySettings:
    """Resolved settings for one relay process."""
    api_key: str
    space_id: str
    gather_url: str = "wss://gather.town/api"
    webhook_url: str = ""
    webhook_flush_seconds: float = 10.0
    sheets_spreadsheet_id: str = ""
    sheets_table: str = ""
    sheets_token: str = ""
    sheets_base_url: str = "https://sheets.googleapis.com/v4"
    sheets_include_name: bool = True
    append_flush_seconds: float = 300.0
    reconnect_seconds: float = 5.0
    backoff: str = "fixed"
    max_reconnect_seconds: float = 60.0
    keepalive_seconds: float = 20.0
    snapshot_timeout: float = 5.0
    identity_timeout: float = 4.5
    inspect_token: str = ""
    host: str = "127.0.0.1"
    port: int = 8090

    @classmethod
    def from_env(cls) -> "RelaySettings":
        config = load_config()
        return cls(
            api_key=require_config_value("GATHER_API_KEY"),
            space_id=require_config_value("SPACE_ID"),
            gather_url=config["GATHER_WS_URL"],
            webhook_url=config["WEBHOOK_URL"],
            webhook_flush_seconds=config["WEBHOOK_FLUSH_SECONDS"],
            sheets_spreadsheet_id=config["SHEETS_SPREADSHEET_ID"],
            sheets_table=config["SHEETS_TABLE"],
            sheets_token=config["SHEETS_TOKEN"],
            sheets_base_url=config["SHEETS_BASE_URL"],
            sheets_include_name=config["SHEETS_INCLUDE_NAME"],
            append_flush_seconds=config["APPEND_FLUSH_SECONDS"],
            reconnect_seconds=config["RECONNECT_SECONDS"],
            backoff=config["BACKOFF"],
            max_reconnect_seconds=config["MAX_RECONNECT_SECONDS"],
            keepalive_seconds=config["KEEPALIVE_SECONDS"],
            snapshot_timeout=config["SNAPSHOT_TIMEOUT"],
            identity_timeout=config["IDENTITY_TIMEOUT"],
            inspect_token=config["INSPECT_TOKEN"],
            host=config["HOST"],
            port=config["PORT"],
        )

    @property
    def has_webhook(self) -> bool:
        return bool(self.webhook_url)

    @property
    def has_append_log(self) -> bool:
        return bool(self.sheets_spreadsheet_id and self.sheets_table)

    def validate(self) -> None:
        if not (self.has_webhook or self.has_append_log):
            raise ConfigError(
                "No sink configured. Set RELAY_WEBHOOK_URL (or PIPEDREAM_WEBHOOK_URL) "
                "and/or SHEETS_SPREADSHEET_ID + SHEETS_TABLE"
            )
        if self.backoff not in ("fixed", "exponential"):
            raise ConfigError(f"RELAY_BACKOFF must be 'fixed' or 'exponential', got '{self.backoff}'")

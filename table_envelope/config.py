"""
Service settings and per-request options.

This module provides:
- TableServiceSettings: Account endpoints and client defaults, loaded from
  the environment (and a `.env` file when present)
- TableRequestOptions: Per-call behaviour, merged over client defaults
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .encryption import EncryptionResolver, TableEncryptionPolicy
from .errors import ConfigError
from .executor import LocationMode

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


@dataclass
class TableServiceSettings:
    """Connection settings for one storage account."""

    account_name: str
    endpoint: str
    secondary_endpoint: Optional[str] = None
    request_timeout: float = 30.0  # seconds
    max_attempts: int = 3
    require_encryption: bool = False
    database_url: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> TableServiceSettings:
        """
        Load settings from environment variables.

        Args:
            env_file: Optional `.env` path; by default `.env` is searched for
                from the working directory upwards
            environ: Mapping to read instead of `os.environ`

        Raises:
            ConfigError: If TABLE_ACCOUNT_NAME or TABLE_ENDPOINT is missing,
                or a numeric/boolean value cannot be parsed
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        account_name = environ.get("TABLE_ACCOUNT_NAME")
        endpoint = environ.get("TABLE_ENDPOINT")
        if not account_name:
            raise ConfigError("TABLE_ACCOUNT_NAME must be set in environment or .env file")
        if not endpoint:
            raise ConfigError("TABLE_ENDPOINT must be set in environment or .env file")

        return cls(
            account_name=account_name,
            endpoint=endpoint,
            secondary_endpoint=environ.get("TABLE_SECONDARY_ENDPOINT") or None,
            request_timeout=_parse_number(environ, "TABLE_REQUEST_TIMEOUT", 30.0, float),
            max_attempts=_parse_number(environ, "TABLE_MAX_ATTEMPTS", 3, int),
            require_encryption=_parse_bool(environ, "TABLE_REQUIRE_ENCRYPTION", False),
            database_url=environ.get("DATABASE_URL") or None,
        )


def _parse_number(environ: Mapping[str, str], name: str, default, convert):
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _parse_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class TableRequestOptions:
    """
    Per-request options. Unset (None) fields fall back to the client defaults.
    """

    encryption_policy: Optional[TableEncryptionPolicy] = None
    encryption_resolver: Optional[EncryptionResolver] = None
    require_encryption: Optional[bool] = None
    location_mode: Optional[LocationMode] = None
    timeout: Optional[float] = None

    def merged_with(self, defaults: Optional[TableRequestOptions]) -> TableRequestOptions:
        """Return a copy with every unset field taken from `defaults`."""
        if defaults is None:
            return replace(self)
        return TableRequestOptions(
            encryption_policy=_first(self.encryption_policy, defaults.encryption_policy),
            encryption_resolver=_first(self.encryption_resolver, defaults.encryption_resolver),
            require_encryption=_first(self.require_encryption, defaults.require_encryption),
            location_mode=_first(self.location_mode, defaults.location_mode),
            timeout=_first(self.timeout, defaults.timeout),
        )

    @classmethod
    def from_settings(cls, settings: TableServiceSettings) -> TableRequestOptions:
        """Client-level defaults derived from service settings."""
        return cls(
            require_encryption=settings.require_encryption,
            location_mode=(
                LocationMode.PRIMARY_THEN_SECONDARY
                if settings.secondary_endpoint
                else LocationMode.PRIMARY_ONLY
            ),
            timeout=settings.request_timeout,
        )


def _first(value, fallback):
    return value if value is not None else fallback

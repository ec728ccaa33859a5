"""Configuration management with validation and secret resolution.

Settings live in a YAML file validated by Pydantic models. A missing file
yields the defaults. Secrets are never stored in the configuration; they are
resolved by reference through the environment or the OS keychain.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

import keyring
import yaml
from apscheduler.triggers.cron import CronTrigger
from keyring.errors import KeyringError
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import AuthError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".mailsync"


class SyncSettings(BaseModel):
    """Per-pass behaviour of the executor and scheduler.

    Attributes:
        default_interval_seconds: Delay between passes when the account has none
        min_interval_seconds: Lowest accepted interval
        consistency_every_n_passes: Run the reconciler on every Nth pass
        deletion_grace_passes: Passes a message must be missing before soft delete
        fetch_batch_size: UIDs fetched per FETCH command
        fetch_bodies: Fetch full bodies during the pass
        max_resync_messages: Upper bound on messages backfilled per folder repair
    """

    default_interval_seconds: int = Field(default=180, ge=60)
    min_interval_seconds: int = Field(default=60, ge=1)
    consistency_every_n_passes: int = Field(default=6, ge=1)
    deletion_grace_passes: int = Field(default=2, ge=1)
    fetch_batch_size: int = Field(default=50, ge=1, le=1000)
    fetch_bodies: bool = Field(default=True)
    max_resync_messages: int = Field(default=500, ge=1)

    @model_validator(mode="after")
    def _interval_above_minimum(self) -> "SyncSettings":
        if self.default_interval_seconds < self.min_interval_seconds:
            raise ValueError("default_interval_seconds must be >= min_interval_seconds")
        return self


class ConnectionSettings(BaseModel):
    """Network settings for the mailbox client.

    ``connect_retries`` enables a bounded exponential backoff inside
    ``connect`` for network failures. It is off by default so that a failed
    connection simply waits for the next scheduled tick.
    """

    timeout_seconds: int = Field(default=30, ge=1, le=600)
    connect_retries: int = Field(default=0, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)


class StorageSettings(BaseModel):
    """Location of the local mirror database."""

    database_path: Path = Field(default=DEFAULT_HOME / "mailsync.db")

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Ensure database parent directory exists."""
        resolved = v.expanduser().resolve()
        if not resolved.parent.exists():
            resolved.parent.mkdir(parents=True, exist_ok=True)
        return resolved


class AuditSettings(BaseModel):
    """Audit trail settings."""

    enabled: bool = Field(default=True)
    output_dir: Path = Field(default=DEFAULT_HOME / "audit")

    @field_validator("output_dir")
    @classmethod
    def validate_output_dir(cls, v: Path) -> Path:
        return v.expanduser().resolve()


class SweepSettings(BaseModel):
    """Schedule of the global consistency sweep run by the daemon."""

    enabled: bool = Field(default=True)
    cron: str = Field(default="0 3 * * *", description="Crontab expression")

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        try:
            CronTrigger.from_crontab(v)
        except ValueError as exc:
            raise ValueError(f"Invalid cron expression: {v}") from exc
        return v


class MailSyncConfig(BaseModel):
    """Top level configuration."""

    version: int = Field(default=1)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class ConfigurationManager:
    """Loads, saves and validates the YAML configuration file."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = config_path or (DEFAULT_HOME / "config" / "mailsync.yaml")
        self._config: Optional[MailSyncConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> MailSyncConfig:
        """Load and validate configuration.

        Raises:
            ConfigurationError: If the file does not validate
        """
        if not self._config_path.exists():
            logger.debug("No configuration file, using defaults", extra={"config_path": str(self._config_path)})
            self._config = MailSyncConfig()
            return self._config

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Failed to parse configuration: {exc}") from exc

        try:
            self._config = MailSyncConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(_format_errors(exc))}"
            ) from exc
        return self._config

    def save(self, config: MailSyncConfig) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            MailSyncConfig(**data)
        except ValidationError as exc:
            return _format_errors(exc)
        except yaml.YAMLError as exc:
            return [f"Failed to parse configuration: {exc}"]
        return []


class SecretsManager:
    """Resolves opaque secret references to plaintext credentials.

    Environment variables (``MAILSYNC_<REF>``) take priority over the OS
    keychain.
    """

    def __init__(self, keyring_service: str = "mailsync"):
        self._keyring_service = keyring_service

    @staticmethod
    def env_var_for(ref: str) -> str:
        return "MAILSYNC_" + re.sub(r"[^A-Za-z0-9]", "_", ref).upper()

    def get_secret(self, ref: str) -> Optional[str]:
        env_value = os.getenv(self.env_var_for(ref))
        if env_value:
            return env_value
        try:
            return keyring.get_password(self._keyring_service, ref)
        except KeyringError as exc:
            logger.warning("Keyring lookup failed", extra={"secret_ref": ref, "error": str(exc)})
            return None

    def resolve(self, ref: str) -> str:
        """Return the plaintext secret or raise ``AuthError``."""
        secret = self.get_secret(ref)
        if not secret:
            raise AuthError(f"No secret stored for reference {ref!r}")
        return secret

    def set_secret(self, ref: str, value: str) -> None:
        try:
            keyring.set_password(self._keyring_service, ref, value)
        except KeyringError as exc:
            raise RuntimeError(f"Failed to store secret in keyring: {exc}") from exc

    def delete_secret(self, ref: str) -> None:
        try:
            keyring.delete_password(self._keyring_service, ref)
        except KeyringError:
            logger.debug("Secret already absent", extra={"secret_ref": ref})


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


__all__ = [
    "AuditSettings",
    "ConfigurationError",
    "ConfigurationManager",
    "ConnectionSettings",
    "MailSyncConfig",
    "SecretsManager",
    "StorageSettings",
    "SweepSettings",
    "SyncSettings",
]

"""Settings management for mailsync.

Settings are nested pydantic models persisted as JSON at
``~/.mailsync/config.json``. Secrets are masked on disk and kept in the
system keyring; ``MAILSYNC_*`` environment variables override file values.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
import keyring.errors
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from ..sync.models import MessageCategory


logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".mailsync"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_DB_PATH = DEFAULT_HOME / "mailsync.db"
DEFAULT_SECRETS_SERVICE = "mailsync"
DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
MASK = "***"

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class SyncSettings(BaseModel):
    """Engine timing and retry tunables."""

    backfill_days: int = Field(30, ge=1, le=365, description="Historical window in days")
    idle_timeout_seconds: float = Field(
        300, gt=0, le=1740, description="Ceiling of one IDLE cycle (RFC 2177 caps at 29 min)"
    )
    keepalive_interval_seconds: float = Field(10, gt=0, description="NOOP interval")
    poll_interval_seconds: float = Field(60, gt=0, description="Fallback poll interval")
    reconcile_interval_seconds: float = Field(300, gt=0, description="Account reconcile interval")
    classifier_timeout_seconds: float = Field(30, gt=0, description="Pipeline classification bound")
    connect_timeout_seconds: float = Field(30, gt=0, description="Socket timeout for IMAP")
    connect_max_retries: int = Field(2, ge=0, le=10, description="Retries for transient connect errors")


class StorageSettings(BaseModel):
    db_path: Path = Field(default=DEFAULT_DB_PATH, description="SQLite database file")


class ClassifierSettings(BaseModel):
    """OpenAI-compatible chat-completions classifier."""

    enabled: bool = Field(True, description="Classify ingested messages")
    api_key: Optional[SecretStr] = Field(default=None, description="API bearer token")
    base_url: str = Field("https://api.openai.com/v1", description="API root URL")
    model: str = Field("gpt-3.5-turbo", description="Chat model")
    timeout_seconds: float = Field(30, gt=0, description="HTTP timeout")
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(200, ge=1)
    positive_category: MessageCategory = Field(
        MessageCategory.INTERESTED, description="Category that triggers notifications"
    )

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")


class SearchSettings(BaseModel):
    enabled: bool = Field(True, description="Index ingested messages")
    elasticsearch_node: str = Field("http://localhost:9200", description="Elasticsearch URL")
    index_name: str = Field("emails", min_length=1)
    request_timeout_seconds: float = Field(10, gt=0)

    @field_validator("elasticsearch_node")
    @classmethod
    def _validate_node(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("elasticsearch_node must start with http:// or https://")
        return value.rstrip("/")


class NotificationSettings(BaseModel):
    slack_webhook_url: Optional[str] = Field(default=None, description="Slack incoming webhook")
    webhook_url: Optional[str] = Field(default=None, description="Outbound interest webhook")
    timeout_seconds: float = Field(10, gt=0)


class LoggingSettings(BaseModel):
    level: str = Field("INFO", description="Root log level")
    format: str = Field(DEFAULT_LOG_FORMAT, description="logging.basicConfig format")

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in _LOG_LEVELS:
            raise ValueError(f"level must be one of {sorted(_LOG_LEVELS)}")
        return upper


class Settings(BaseModel):
    """Root configuration state."""

    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        try:
            return self.keyring_module.get_password(self.service_name, key)
        except keyring.errors.KeyringError as exc:
            logger.warning(f"Keyring unavailable, secret {key} not loaded: {exc}")
            return None

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except keyring.errors.PasswordDeleteError:
            return


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    payload = json.loads(path.read_text())
    try:
        settings = Settings.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
    _drop_masked_secrets(settings)
    return settings


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    secret_store: SecretStore | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings, then apply overrides and ``MAILSYNC_*`` env vars."""

    secret_store = secret_store or SecretStore()
    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()
        save_settings(settings, path)

    merged = settings.model_dump(mode="python")
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    resolved = Settings.model_validate(merged)
    _ensure_directories(resolved)
    _hydrate_secrets(resolved, secret_store)
    save_settings(resolved, path)
    return resolved


def configure_logging(settings: LoggingSettings) -> None:
    """Install the root handler used by the CLI and the daemon."""

    logging.basicConfig(level=settings.level, format=settings.format, force=True)


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    storage = data.setdefault("storage", {})
    _set_env_override(storage, "db_path", "MAILSYNC_DB_PATH")

    sync = data.setdefault("sync", {})
    _set_env_override(sync, "backfill_days", "MAILSYNC_BACKFILL_DAYS", cast_int=True)

    classifier = data.setdefault("classifier", {})
    _set_env_override(classifier, "api_key", "MAILSYNC_OPENAI_API_KEY")
    _set_env_override(classifier, "base_url", "MAILSYNC_OPENAI_BASE_URL")
    _set_env_override(classifier, "model", "MAILSYNC_OPENAI_MODEL")
    _set_env_override(classifier, "enabled", "MAILSYNC_CLASSIFIER_ENABLED", cast_bool=True)

    search = data.setdefault("search", {})
    _set_env_override(search, "elasticsearch_node", "MAILSYNC_ELASTICSEARCH_NODE")
    _set_env_override(search, "enabled", "MAILSYNC_SEARCH_ENABLED", cast_bool=True)

    notifications = data.setdefault("notifications", {})
    _set_env_override(notifications, "slack_webhook_url", "MAILSYNC_SLACK_WEBHOOK_URL")
    _set_env_override(notifications, "webhook_url", "MAILSYNC_WEBHOOK_URL")

    logging_section = data.setdefault("logging", {})
    _set_env_override(logging_section, "level", "MAILSYNC_LOG_LEVEL")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        mapping[key] = int(raw)
    else:
        mapping[key] = raw


def _ensure_directories(settings: Settings) -> None:
    settings.storage.db_path.parent.mkdir(parents=True, exist_ok=True)


def _hydrate_secrets(settings: Settings, secret_store: SecretStore) -> None:
    classifier = settings.classifier
    key = _secret_key("classifier", classifier.base_url)
    if classifier.api_key is not None:
        try:
            secret_store.set_secret(key, classifier.api_key.get_secret_value())
        except (RuntimeError, keyring.errors.KeyringError) as exc:
            logger.warning(f"Could not store classifier API key in keyring: {exc}")
        return
    stored = secret_store.get_secret(key)
    if stored:
        classifier.api_key = SecretStr(stored)


def _drop_masked_secrets(settings: Settings) -> None:
    api_key = settings.classifier.api_key
    if api_key is not None and api_key.get_secret_value() == MASK:
        settings.classifier.api_key = None


def _secret_key(backend: str, identifier: str) -> str:
    return f"{backend}:{identifier}"


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    classifier = payload.get("classifier", {})
    if classifier.get("api_key"):
        classifier["api_key"] = MASK
    return payload


__all__ = [
    "ClassifierSettings",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DB_PATH",
    "LoggingSettings",
    "NotificationSettings",
    "SearchSettings",
    "SecretStore",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "bootstrap_settings",
    "configure_logging",
    "load_settings",
    "save_settings",
]

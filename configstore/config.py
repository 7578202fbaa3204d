"""Configuration for the configuration store.

Two layers:

- ``StoreSettings``: process settings read from ``CONFIGSTORE_*`` environment
  variables (timeouts, pool sizing, transfer tool).
- ``StoreConfig``: the backend selection (SQLite file or PostgreSQL server),
  persisted as a small YAML file so a restarted process reopens the backend
  that was last made active.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

BackendType = Literal["sqlite", "postgres"]

DEFAULT_SQLITE_PATH = "config.db"


class SQLiteConfig(BaseModel):
    path: str = DEFAULT_SQLITE_PATH


class PostgresConfig(BaseModel):
    host: str = "localhost"
    port: int = 5432
    user: str = ""
    password: str = ""
    db_name: str = ""
    ssl_mode: str = "disable"


def parse_variant_config(
    data: Any,
    variants: dict[str, type[BaseModel]],
    default_type: str,
    kind: str,
) -> Any:
    """Parse ``data["config"]`` with the model selected by ``data["type"]``.

    Used as a ``mode="before"`` validator by every ``{type, config}`` model so
    the inner config is validated against exactly one variant.
    """
    if not isinstance(data, dict):
        return data
    raw = data.get("config")
    variant = data.get("type")
    if isinstance(raw, BaseModel):
        # A variant model passed directly names its own type.
        inferred = next((name for name, cls in variants.items() if type(raw) is cls), None)
        if variant is None:
            variant = inferred
        elif inferred is not None and inferred != variant:
            raise ValueError(f"{kind} type {variant!r} does not match {type(raw).__name__}")
        raw = raw.model_dump()
    if variant is None:
        variant = default_type
    model = variants.get(variant)
    if model is None:
        raise ValueError(f"unknown {kind} type: {variant}")
    if raw is None and variant == default_type:
        # Leave the field's own default in place.
        return {**{k: v for k, v in data.items() if k != "config"}, "type": variant}
    return {**data, "type": variant, "config": model.model_validate(raw or {})}


class StoreConfig(BaseModel):
    """Backend selection: which engine holds the configuration tables."""

    enabled: bool = True
    type: BackendType = "sqlite"
    config: SQLiteConfig | PostgresConfig = Field(default_factory=SQLiteConfig)

    @model_validator(mode="before")
    @classmethod
    def _parse_config_by_type(cls, data: Any) -> Any:
        return parse_variant_config(
            data,
            {"sqlite": SQLiteConfig, "postgres": PostgresConfig},
            default_type="sqlite",
            kind="config store",
        )

    def to_url(self) -> URL:
        """SQLAlchemy async URL for this backend."""
        if isinstance(self.config, SQLiteConfig):
            return URL.create("sqlite+aiosqlite", database=self.config.path)
        return URL.create(
            "postgresql+asyncpg",
            username=self.config.user or None,
            password=self.config.password or None,
            host=self.config.host,
            port=self.config.port,
            database=self.config.db_name,
            query={"ssl": self.config.ssl_mode} if self.config.ssl_mode != "disable" else {},
        )

    def to_transfer_uri(self, hide_password: bool = False) -> str:
        """Connection URI in the form accepted by the bulk transfer tool."""
        if isinstance(self.config, SQLiteConfig):
            return f"sqlite:///{self.config.path}"
        password = "***" if hide_password else quote(self.config.password, safe="")
        return (
            f"postgresql://{quote(self.config.user, safe='')}:{password}"
            f"@{self.config.host}:{self.config.port}/{self.config.db_name}"
            f"?sslmode={self.config.ssl_mode}"
        )

    def describe(self) -> str:
        """Loggable description with the password masked."""
        return self.to_transfer_uri(hide_password=True)

    def same_backend(self, other: "StoreConfig") -> bool:
        return self.type == other.type and self.config.model_dump() == other.config.model_dump()


class StoreSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONFIGSTORE_", extra="ignore")

    config_path: str | None = None
    sqlite_path: str = DEFAULT_SQLITE_PATH
    sql_echo: bool = False
    db_pool_size: int = 10
    db_max_overflow: int = 20
    operation_timeout: float | None = 30.0
    transfer_command: str = "pgloader"
    transfer_timeout: float = 1800.0

    def default_store_config(self) -> StoreConfig:
        return StoreConfig(type="sqlite", config=SQLiteConfig(path=self.sqlite_path))


def load_store_config(path: str | Path | None, settings: StoreSettings | None = None) -> StoreConfig:
    """Read the backend selection file, falling back to the default SQLite file."""
    settings = settings or get_settings()
    if path is None:
        return settings.default_store_config()

    cfg_path = Path(path)
    if not cfg_path.exists():
        return settings.default_store_config()

    data = yaml.safe_load(cfg_path.read_text()) or {}
    section = data.get("config_store", data) if isinstance(data, dict) else {}
    if not section:
        return settings.default_store_config()
    return StoreConfig.model_validate(section)


def save_store_config(path: str | Path, config: StoreConfig) -> None:
    """Write the backend selection file, keeping unrelated top-level sections."""
    cfg_path = Path(path)
    data: dict[str, Any] = {}
    if cfg_path.exists():
        existing = yaml.safe_load(cfg_path.read_text())
        if isinstance(existing, dict):
            data = existing

    data["config_store"] = config.model_dump(mode="python")
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(yaml.safe_dump(data, sort_keys=False))
    cfg_path.chmod(0o600)


@lru_cache
def get_settings() -> StoreSettings:
    return StoreSettings()

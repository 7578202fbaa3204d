"""Vector store and log store configuration types.

Both are ``{enabled, type, config}`` records whose ``config`` shape depends on
``type``.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from configstore.config import PostgresConfig, SQLiteConfig, parse_variant_config


class WeaviateConfig(BaseModel):
    scheme: Literal["http", "https"] = "http"
    host: str = "localhost:8080"
    api_key: str = ""
    headers: dict[str, str] = Field(default_factory=dict)


class RedisConfig(BaseModel):
    addr: str = "localhost:6379"
    username: str = ""
    password: str = ""
    db: int = 0


VECTOR_STORE_VARIANTS: dict[str, type[BaseModel]] = {
    "weaviate": WeaviateConfig,
    "redis": RedisConfig,
}

LOG_STORE_VARIANTS: dict[str, type[BaseModel]] = {
    "sqlite": SQLiteConfig,
    "postgres": PostgresConfig,
}


class VectorStoreConfig(BaseModel):
    enabled: bool = False
    type: Literal["weaviate", "redis"] = "weaviate"
    config: WeaviateConfig | RedisConfig = Field(default_factory=WeaviateConfig)

    @model_validator(mode="before")
    @classmethod
    def _parse_config_by_type(cls, data: Any) -> Any:
        return parse_variant_config(data, VECTOR_STORE_VARIANTS, "weaviate", "vector store")


class LogStoreConfig(BaseModel):
    enabled: bool = False
    type: Literal["sqlite", "postgres"] = "sqlite"
    config: SQLiteConfig | PostgresConfig = Field(
        default_factory=lambda: SQLiteConfig(path="logs.db")
    )

    @model_validator(mode="before")
    @classmethod
    def _parse_config_by_type(cls, data: Any) -> Any:
        return parse_variant_config(data, LOG_STORE_VARIANTS, "sqlite", "log store")

"""Secret redaction on read and sentinel merge on write.

Reads replace every secret with ``REDACTED_VALUE``. A client that edits a
config and sends it back unchanged therefore submits the sentinel, which is
swapped for the stored plaintext before the write. Any other value is taken
as the new secret.
"""

from typing import Optional, TypeVar

from pydantic import BaseModel

from configstore.config import PostgresConfig, StoreConfig
from configstore.exceptions import ValidationError
from configstore.types.providers import (
    BedrockKeyConfig,
    Key,
    ProviderConfig,
    ProxyConfig,
    VertexKeyConfig,
)
from configstore.types.stores import (
    LogStoreConfig,
    RedisConfig,
    VectorStoreConfig,
    WeaviateConfig,
)

REDACTED_VALUE = "<redacted>"

# Secret fields per config model. Only these variants are ever merged.
SECRET_FIELDS: dict[type[BaseModel], tuple[str, ...]] = {
    WeaviateConfig: ("api_key",),
    RedisConfig: ("password",),
    PostgresConfig: ("password",),
    VertexKeyConfig: ("auth_credentials",),
    BedrockKeyConfig: ("access_key", "secret_key", "session_token"),
    ProxyConfig: ("password",),
}

M = TypeVar("M", bound=BaseModel)


def redact_secret(value: Optional[str]) -> Optional[str]:
    """Hide a secret. Empty values stay empty; there is nothing to hide."""
    if not value:
        return value
    return REDACTED_VALUE


def is_redacted(value: Optional[str]) -> bool:
    return value == REDACTED_VALUE


def merge_secret(new: Optional[str], old: Optional[str]) -> Optional[str]:
    """Resolve the sentinel to the stored value; anything else wins."""
    if is_redacted(new):
        return old
    return new


def redact_model(model: M) -> M:
    """Copy of ``model`` with its registered secret fields redacted."""
    fields = SECRET_FIELDS.get(type(model), ())
    if not fields:
        return model
    return model.model_copy(
        update={name: redact_secret(getattr(model, name)) for name in fields}
    )


def merge_model(new: M, old: Optional[BaseModel]) -> M:
    """Resolve sentinels in ``new`` against ``old`` of the same model type.

    Different types mean the variant changed and ``new`` is taken as-is.
    """
    if old is None or type(old) is not type(new):
        return new
    fields = SECRET_FIELDS.get(type(new), ())
    updates = {
        name: getattr(old, name) for name in fields if is_redacted(getattr(new, name))
    }
    if not updates:
        return new
    return new.model_copy(update=updates)


def _has_sentinel(model: Optional[BaseModel]) -> bool:
    if model is None:
        return False
    return any(is_redacted(getattr(model, name)) for name in SECRET_FIELDS.get(type(model), ()))


# ========== Keys and providers ==========


def redact_key(key: Key) -> Key:
    return key.model_copy(
        update={
            "value": redact_secret(key.value),
            "vertex_key_config": (
                redact_model(key.vertex_key_config) if key.vertex_key_config else None
            ),
            "bedrock_key_config": (
                redact_model(key.bedrock_key_config) if key.bedrock_key_config else None
            ),
        }
    )


def merge_key(new: Key, old: Optional[Key]) -> Key:
    """Resolve sentinels in ``new`` against the stored key with the same id.

    Raises:
        ValidationError: If ``new`` carries the sentinel but no key with its
            id is stored, so there is no plaintext to restore.
    """
    if old is None:
        if (
            is_redacted(new.value)
            or _has_sentinel(new.vertex_key_config)
            or _has_sentinel(new.bedrock_key_config)
        ):
            raise ValidationError(f"key '{new.id}' has a redacted secret but is not stored")
        return new

    return new.model_copy(
        update={
            "value": merge_secret(new.value, old.value),
            "vertex_key_config": (
                merge_model(new.vertex_key_config, old.vertex_key_config)
                if new.vertex_key_config
                else None
            ),
            "bedrock_key_config": (
                merge_model(new.bedrock_key_config, old.bedrock_key_config)
                if new.bedrock_key_config
                else None
            ),
        }
    )


def redact_provider(provider: ProviderConfig) -> ProviderConfig:
    return provider.model_copy(
        update={
            "keys": [redact_key(key) for key in provider.keys],
            "proxy_config": (
                redact_model(provider.proxy_config) if provider.proxy_config else None
            ),
        }
    )


def redact_providers(providers: dict[str, ProviderConfig]) -> dict[str, ProviderConfig]:
    return {name: redact_provider(provider) for name, provider in providers.items()}


def merge_providers(
    new: dict[str, ProviderConfig],
    old: dict[str, ProviderConfig],
) -> dict[str, ProviderConfig]:
    """Resolve sentinels in a submitted provider set against the stored one.

    Keys are matched by key id across all stored providers, so a key moved to
    another provider keeps its stored secret.
    """
    stored_keys = {key.id: key for provider in old.values() for key in provider.keys}
    merged: dict[str, ProviderConfig] = {}
    for name, provider in new.items():
        stored_provider = old.get(name)
        proxy = provider.proxy_config
        if proxy is not None:
            proxy = merge_model(proxy, stored_provider.proxy_config if stored_provider else None)
        merged[name] = provider.model_copy(
            update={
                "keys": [merge_key(key, stored_keys.get(key.id)) for key in provider.keys],
                "proxy_config": proxy,
            }
        )
    return merged


# ========== Vector store / log store / backend descriptor ==========


def redact_vector_store(config: VectorStoreConfig) -> VectorStoreConfig:
    return config.model_copy(update={"config": redact_model(config.config)})


def merge_vector_store(
    new: VectorStoreConfig, old: Optional[VectorStoreConfig]
) -> VectorStoreConfig:
    if old is None or old.type != new.type:
        return new
    return new.model_copy(update={"config": merge_model(new.config, old.config)})


def redact_log_store(config: LogStoreConfig) -> LogStoreConfig:
    return config.model_copy(update={"config": redact_model(config.config)})


def merge_log_store(new: LogStoreConfig, old: Optional[LogStoreConfig]) -> LogStoreConfig:
    if old is None or old.type != new.type:
        return new
    return new.model_copy(update={"config": merge_model(new.config, old.config)})


def redact_store_config(config: StoreConfig) -> StoreConfig:
    return config.model_copy(update={"config": redact_model(config.config)})


def merge_store_config(new: StoreConfig, old: Optional[StoreConfig]) -> StoreConfig:
    if old is None or old.type != new.type:
        return new
    return new.model_copy(update={"config": merge_model(new.config, old.config)})

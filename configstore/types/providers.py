"""Provider and credential payload types."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from configstore.exceptions import ConflictError


class AzureKeyConfig(BaseModel):
    """Azure OpenAI endpoint settings attached to a key."""

    endpoint: str
    deployments: dict[str, str] = Field(default_factory=dict)
    api_version: Optional[str] = None


class VertexKeyConfig(BaseModel):
    """Google Vertex project settings attached to a key."""

    project_id: str
    region: str
    auth_credentials: str = ""


class BedrockKeyConfig(BaseModel):
    """AWS Bedrock credentials attached to a key."""

    access_key: str = ""
    secret_key: str = ""
    session_token: Optional[str] = None
    region: Optional[str] = None
    arn: Optional[str] = None
    deployments: dict[str, str] = Field(default_factory=dict)


class Key(BaseModel):
    """A credential usable for one provider.

    ``id`` is the caller-assigned natural key used for upserts; it is distinct
    from the storage row id.
    """

    id: str
    value: str
    models: list[str] = Field(default_factory=list)
    weight: float = 1.0
    azure_key_config: Optional[AzureKeyConfig] = None
    vertex_key_config: Optional[VertexKeyConfig] = None
    bedrock_key_config: Optional[BedrockKeyConfig] = None

    @field_validator("id", "value")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class NetworkConfig(BaseModel):
    base_url: Optional[str] = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    default_request_timeout_in_seconds: int = 30
    max_retries: int = 0
    retry_backoff_initial_ms: int = 500
    retry_backoff_max_ms: int = 5000


class ConcurrencyAndBufferSize(BaseModel):
    concurrency: int = 1000
    buffer_size: int = 5000


class ProxyConfig(BaseModel):
    type: Literal["none", "http", "socks5", "environment"] = "none"
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class CustomProviderConfig(BaseModel):
    base_provider_type: str
    allowed_requests: Optional[dict[str, bool]] = None


class ProviderConfig(BaseModel):
    """Full configuration of one upstream provider, including its keys."""

    keys: list[Key] = Field(default_factory=list)
    network_config: Optional[NetworkConfig] = None
    concurrency_and_buffer_size: Optional[ConcurrencyAndBufferSize] = None
    proxy_config: Optional[ProxyConfig] = None
    send_back_raw_response: bool = False
    custom_provider_config: Optional[CustomProviderConfig] = None


def dump_optional(model: Optional[BaseModel]) -> Optional[dict[str, Any]]:
    """Serialize an optional sub-config for a JSON column."""
    if model is None:
        return None
    return model.model_dump(mode="json")


def validate_provider_set(providers: dict[str, ProviderConfig]) -> None:
    """Reject a provider set in which a key id appears more than once.

    Key ids are matched globally during upserts, so the same id under two
    providers (or twice under one) would make the outcome order-dependent.
    """
    seen: dict[str, str] = {}
    for name, provider in providers.items():
        if not name:
            raise ConflictError("provider name must not be empty")
        for key in provider.keys:
            if key.id in seen:
                raise ConflictError(
                    f"duplicate key id '{key.id}' in providers '{seen[key.id]}' and '{name}'"
                )
            seen[key.id] = name

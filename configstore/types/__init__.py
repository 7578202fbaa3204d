"""Typed payloads exchanged with the configuration store."""

from configstore.types.common import (
    ClientConfig,
    EnvKeyInfo,
    MCPClientConfig,
    MCPConfig,
    MCPStdioConfig,
)
from configstore.types.governance import CustomerView, KeyRef, TeamView, VirtualKeyView
from configstore.types.providers import (
    AzureKeyConfig,
    BedrockKeyConfig,
    ConcurrencyAndBufferSize,
    CustomProviderConfig,
    Key,
    NetworkConfig,
    ProviderConfig,
    ProxyConfig,
    VertexKeyConfig,
    validate_provider_set,
)
from configstore.types.stores import (
    LogStoreConfig,
    RedisConfig,
    VectorStoreConfig,
    WeaviateConfig,
)

__all__ = [
    # Client / MCP / env keys
    "ClientConfig",
    "EnvKeyInfo",
    "MCPClientConfig",
    "MCPConfig",
    "MCPStdioConfig",
    # Providers
    "AzureKeyConfig",
    "BedrockKeyConfig",
    "ConcurrencyAndBufferSize",
    "CustomProviderConfig",
    "Key",
    "NetworkConfig",
    "ProviderConfig",
    "ProxyConfig",
    "VertexKeyConfig",
    "validate_provider_set",
    # Stores
    "LogStoreConfig",
    "RedisConfig",
    "VectorStoreConfig",
    "WeaviateConfig",
    # Governance views
    "CustomerView",
    "KeyRef",
    "TeamView",
    "VirtualKeyView",
]

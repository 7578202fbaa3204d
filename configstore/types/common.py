"""Payload types for the process-wide configuration domains."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class ClientConfig(BaseModel):
    """Runtime switches of the gateway process."""

    drop_excess_requests: bool = False
    initial_pool_size: int = 300
    prometheus_labels: list[str] = Field(default_factory=list)
    enable_logging: bool = True
    enable_governance: bool = True
    enforce_governance_header: bool = False
    allow_direct_keys: bool = False
    allowed_origins: list[str] = Field(default_factory=list)


class MCPStdioConfig(BaseModel):
    command: str
    args: list[str] = Field(default_factory=list)
    envs: list[str] = Field(default_factory=list)


class MCPClientConfig(BaseModel):
    """Registration of a tool-execution endpoint."""

    name: str
    connection_type: Literal["http", "sse", "stdio"]
    connection_string: Optional[str] = None
    stdio_config: Optional[MCPStdioConfig] = None
    tools_to_execute: list[str] = Field(default_factory=list)
    tools_to_skip: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_connection(self) -> "MCPClientConfig":
        if self.connection_type == "stdio" and self.stdio_config is None:
            raise ValueError("stdio connections require stdio_config")
        if self.connection_type != "stdio" and not self.connection_string:
            raise ValueError(f"{self.connection_type} connections require connection_string")
        return self


class MCPConfig(BaseModel):
    client_configs: list[MCPClientConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "MCPConfig":
        names = [client.name for client in self.client_configs]
        if len(names) != len(set(names)):
            raise ValueError("MCP client names must be unique")
        return self


class EnvKeyInfo(BaseModel):
    """Which credential slot an environment variable populates."""

    env_var: str
    provider: str
    key_type: str
    config_path: str
    key_id: str

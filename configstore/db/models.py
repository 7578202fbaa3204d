"""Database models for the configuration store.

This module defines the tables that hold gateway configuration:
- Providers and their Keys (credentials, weights, vendor sub-configs)
- Governance: Customers, Teams, Virtual Keys, Budgets, Rate Limits
- Independent registrations: MCP clients, Plugins, env-var key bindings
- Singletons: client config, vector store, log store, active backend

Relationships are expressed only as foreign-key columns. The repository
loads related rows with explicit queries, so nothing here lazy-loads.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from configstore.db.base import Base, RowIDMixin, StringIDMixin, TimestampMixin
from configstore.exceptions import ValidationError


# ========== Providers and Keys ==========


class TableProvider(Base, RowIDMixin, TimestampMixin):
    """Upstream model vendor configuration. Owns its keys."""

    __tablename__ = "config_providers"

    name: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="Provider name (e.g., 'openai', 'anthropic')",
    )
    network_config: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Base URL, extra headers, timeouts and retries",
    )
    concurrency_and_buffer_size: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Worker concurrency and queue buffer size",
    )
    proxy_config: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Outbound proxy settings",
    )
    send_back_raw_response: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    custom_provider_config: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Base provider type and allowed request kinds for custom providers",
    )

    def __repr__(self) -> str:
        return f"<TableProvider(id={self.id}, name={self.name})>"


class TableKey(Base, RowIDMixin, TimestampMixin):
    """Credential usable for one provider.

    ``key_id`` is the natural key used for upserts. The storage ``id`` must
    survive updates because virtual keys reference it.
    """

    __tablename__ = "config_keys"
    __table_args__ = (
        UniqueConstraint("key_id", "value", name="uq_config_keys_key_id_value"),
    )

    key_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Caller-assigned key identifier",
    )
    value: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Secret value",
    )
    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("config_providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Owning provider name (denormalized for bulk exports)",
    )
    models: Mapped[list] = mapped_column(
        "models_json",
        JSON,
        default=list,
        nullable=False,
        comment="Models this key may serve (empty = all)",
    )
    weight: Mapped[float] = mapped_column(
        Float,
        default=1.0,
        nullable=False,
    )
    azure_key_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    vertex_key_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    bedrock_key_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<TableKey(id={self.id}, key_id={self.key_id}, provider={self.provider})>"


# ========== Governance ==========


class TableBudget(Base, StringIDMixin, TimestampMixin):
    """Spend ceiling owned by exactly one virtual key, team or customer."""

    __tablename__ = "governance_budgets"

    max_limit: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Maximum spend (USD) per period",
    )
    reset_duration: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Period length, e.g. '30s', '1h', '1d', '1M'",
    )
    last_reset: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    current_usage: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TableBudget(id={self.id}, max_limit={self.max_limit})>"


class TableRateLimit(Base, StringIDMixin, TimestampMixin):
    """Request and token rate ceilings owned by exactly one virtual key."""

    __tablename__ = "governance_rate_limits"

    token_max_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    token_reset_duration: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    token_current_usage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    token_last_reset: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    request_max_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    request_reset_duration: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    request_current_usage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    request_last_reset: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<TableRateLimit(id={self.id})>"


class TableCustomer(Base, StringIDMixin, TimestampMixin):
    """Top-level tenant."""

    __tablename__ = "governance_customers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    budget_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_budgets.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<TableCustomer(id={self.id}, name={self.name})>"


class TableTeam(Base, StringIDMixin, TimestampMixin):
    """Billing / access grouping, optionally under a customer."""

    __tablename__ = "governance_teams"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    budget_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_budgets.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<TableTeam(id={self.id}, name={self.name}, customer_id={self.customer_id})>"


virtual_key_keys = Table(
    "governance_virtual_key_keys",
    Base.metadata,
    Column(
        "virtual_key_id",
        String(255),
        ForeignKey("governance_virtual_keys.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "key_id",
        Integer,
        ForeignKey("config_keys.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class TableVirtualKey(Base, StringIDMixin, TimestampMixin):
    """Caller-facing access token carrying governance policy."""

    __tablename__ = "governance_virtual_keys"

    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="Token presented by callers",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allowed_models: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_teams.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    budget_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_budgets.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )
    rate_limit_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        ForeignKey("governance_rate_limits.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<TableVirtualKey(id={self.id}, name={self.name})>"


# ========== Independent registrations ==========


class TableMCPClient(Base, RowIDMixin, TimestampMixin):
    """Tool-execution endpoint registration."""

    __tablename__ = "config_mcp_clients"

    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    connection_type: Mapped[str] = mapped_column(String(20), nullable=False)
    connection_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stdio_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    tools_to_execute: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    tools_to_skip: Mapped[list] = mapped_column(JSON, default=list, nullable=False)


class TablePlugin(Base, RowIDMixin, TimestampMixin):
    """Installed extension descriptor."""

    __tablename__ = "config_plugins"

    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<TablePlugin(name={self.name}, enabled={self.enabled})>"


class TableEnvKey(Base, RowIDMixin, TimestampMixin):
    """Binding of an environment variable to the credential slot it fills."""

    __tablename__ = "config_env_keys"

    env_var: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    key_type: Mapped[str] = mapped_column(String(50), nullable=False)
    config_path: Mapped[str] = mapped_column(String(500), nullable=False)
    key_id: Mapped[str] = mapped_column(String(255), nullable=False)


class TableConfig(Base, RowIDMixin, TimestampMixin):
    """Generic key/value setting."""

    __tablename__ = "config_entries"

    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TableModelPricing(Base, RowIDMixin, TimestampMixin):
    """Per-token price of a model served by a provider."""

    __tablename__ = "config_model_pricing"
    __table_args__ = (
        UniqueConstraint("model", "provider", "mode", name="uq_model_pricing_model_provider_mode"),
    )

    model: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(50), default="chat", nullable=False)
    input_cost_per_token: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    output_cost_per_token: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


# ========== Singletons ==========


class TableClientConfig(Base, RowIDMixin, TimestampMixin):
    """Process-wide runtime switches (exactly one row)."""

    __tablename__ = "config_client"

    drop_excess_requests: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    initial_pool_size: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    enable_logging: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enable_governance: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enforce_governance_header: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allow_direct_keys: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    prometheus_labels: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    allowed_origins: Mapped[list] = mapped_column(JSON, default=list, nullable=False)


class TableVectorStoreConfig(Base, RowIDMixin, TimestampMixin):
    """Vector store selection (exactly one row)."""

    __tablename__ = "config_vector_store"

    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)


class TableLogStoreConfig(Base, RowIDMixin, TimestampMixin):
    """Log store selection (exactly one row)."""

    __tablename__ = "config_log_store"

    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)


class TableStoreBackend(Base, RowIDMixin, TimestampMixin):
    """Descriptor of the backend these tables live in (exactly one row)."""

    __tablename__ = "config_store_backend"

    type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)


def validate_single_owner(kind: str, entity_id: str, owners: list[str]) -> None:
    """Check that a budget or rate limit is reachable from exactly one parent.

    Args:
        kind: Entity kind, used in the error message.
        entity_id: The budget / rate limit id.
        owners: One entry (e.g. ``"virtual_key:vk-1"``) per referencing parent.

    Raises:
        ValidationError: If there are zero or several owners.
    """
    if len(owners) == 1:
        return
    if not owners:
        raise ValidationError(f"{kind} '{entity_id}' is not referenced by any parent")
    raise ValidationError(
        f"{kind} '{entity_id}' is referenced by more than one parent: {', '.join(sorted(owners))}"
    )

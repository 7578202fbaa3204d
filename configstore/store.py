"""Transactional repository for gateway configuration.

``ConfigStore`` serves every configuration domain (providers and keys,
governance entities, registrations, singletons) from the active backend.

Every public method takes an optional ``session`` keyword:

- ``session=None``: the method owns its transaction. It commits on success
  and rolls back on any failure, including the operation timeout.
- a session from :meth:`ConfigStore.transaction` or
  :meth:`ConfigStore.execute_transaction`: the method joins that transaction
  and the caller decides commit or rollback.

Writers serialize on the store's lock, which backend migration also holds.
Calling a write method *without* ``session`` from inside a transaction
would wait on that lock forever, so always pass the session through.
"""

import asyncio
import logging
from collections.abc import Sequence
from contextlib import asynccontextmanager, contextmanager, nullcontext
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterator, Optional, TypeVar

from sqlalchemy import delete, insert, inspect, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from configstore.config import StoreConfig, StoreSettings, get_settings, load_store_config
from configstore.db import Database, open_database, prepare_database
from configstore.db.base import Base
from configstore.db.models import (
    TableBudget,
    TableClientConfig,
    TableConfig,
    TableCustomer,
    TableEnvKey,
    TableKey,
    TableLogStoreConfig,
    TableMCPClient,
    TableModelPricing,
    TablePlugin,
    TableProvider,
    TableRateLimit,
    TableStoreBackend,
    TableTeam,
    TableVectorStoreConfig,
    TableVirtualKey,
    validate_single_owner,
    virtual_key_keys,
)
from configstore.exceptions import (
    ConfigStoreError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from configstore.redaction import (
    merge_log_store,
    merge_providers,
    merge_store_config,
    merge_vector_store,
    redact_log_store,
    redact_providers,
    redact_store_config,
    redact_vector_store,
)
from configstore.types import (
    AzureKeyConfig,
    BedrockKeyConfig,
    ClientConfig,
    ConcurrencyAndBufferSize,
    CustomerView,
    CustomProviderConfig,
    EnvKeyInfo,
    Key,
    KeyRef,
    LogStoreConfig,
    MCPClientConfig,
    MCPConfig,
    MCPStdioConfig,
    NetworkConfig,
    ProviderConfig,
    ProxyConfig,
    TeamView,
    VectorStoreConfig,
    VertexKeyConfig,
    VirtualKeyView,
    validate_provider_set,
)
from configstore.types.providers import dump_optional

logger = logging.getLogger(__name__)

ConfigSubscriber = Callable[[ClientConfig], Awaitable[None] | None]

T = TypeVar("T")
RowT = TypeVar("RowT", bound=Base)

# Keys in AsyncSession.info used to carry per-transaction state.
_TOUCHED_BUDGETS = "configstore.touched_budgets"
_TOUCHED_RATE_LIMITS = "configstore.touched_rate_limits"
_AFTER_COMMIT = "configstore.after_commit"

_IMMUTABLE_COLUMNS = frozenset({"id", "created_at", "updated_at"})


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ConfigStoreError:
        raise
    except IntegrityError as e:
        raise ConflictError(f"Constraint violation: {e.orig}") from e
    except SQLAlchemyError as e:
        raise StorageError(f"Database operation failed: {e}") from e


def _copy_columns(source: Base, target: Base) -> None:
    """Copy the column attributes explicitly set on ``source`` onto ``target``.

    Attributes never assigned on a transient ``source`` are left alone, so
    callers can submit partial rows.
    """
    state = inspect(source)
    for attr in inspect(type(source)).column_attrs:
        if attr.key in _IMMUTABLE_COLUMNS or attr.key not in state.dict:
            continue
        setattr(target, attr.key, getattr(source, attr.key))


def _touch(session: AsyncSession, marker: str, entity_id: Optional[str]) -> None:
    if entity_id:
        session.info.setdefault(marker, set()).add(entity_id)


def _after_commit(session: AsyncSession, callback: Callable[[], Awaitable[None]]) -> None:
    session.info.setdefault(_AFTER_COMMIT, []).append(callback)


class ConfigStore:
    """Repository over the active configuration backend."""

    def __init__(self, db: Database, settings: Optional[StoreSettings] = None) -> None:
        self._db = db
        self.settings = settings or get_settings()
        self._write_lock = asyncio.Lock()
        self._subscribers: list[ConfigSubscriber] = []

    @classmethod
    async def open(
        cls,
        store_config: Optional[StoreConfig] = None,
        settings: Optional[StoreSettings] = None,
    ) -> "ConfigStore":
        """Open the configured backend, repair legacy rows and reconcile the schema.

        Raises:
            ValidationError: If the store is disabled.
            RepairError: If startup repair fails.
        """
        settings = settings or get_settings()
        if store_config is None:
            store_config = load_store_config(settings.config_path, settings)
        if not store_config.enabled:
            raise ValidationError("Config store is disabled")

        db = open_database(store_config, settings)
        try:
            with _translate_errors():
                await prepare_database(db)
        except BaseException:
            await db.dispose()
            raise

        logger.info("Config store opened on %s", store_config.describe())
        return cls(db, settings)

    @property
    def db(self) -> Database:
        """The active backend."""
        return self._db

    @property
    def store_config(self) -> StoreConfig:
        return self._db.store_config

    @property
    def write_lock(self) -> asyncio.Lock:
        return self._write_lock

    def swap_database(self, db: Database) -> Database:
        """Make ``db`` the active backend and return the previous one.

        The caller must hold :attr:`write_lock`. In-flight reads finish on
        the backend they started with.
        """
        previous, self._db = self._db, db
        return previous

    async def close(self) -> None:
        await self._db.dispose()

    # ========== Transactions ==========

    @asynccontextmanager
    async def _session_scope(
        self,
        session: Optional[AsyncSession] = None,
        *,
        write: bool = False,
        timeout: Optional[float] = None,
    ) -> AsyncGenerator[AsyncSession, None]:
        if session is not None:
            with _translate_errors():
                yield session
            return

        limit = self.settings.operation_timeout if timeout is None else timeout
        callbacks: list[Callable[[], Awaitable[None]]] = []
        async with self._write_lock if write else nullcontext():
            # Writers queued behind a migration must see the swapped backend.
            db = self._db
            try:
                with _translate_errors():
                    async with asyncio.timeout(limit):
                        async with db.session() as owned:
                            yield owned
                            await self._check_ownership(owned)
                            callbacks = owned.info.pop(_AFTER_COMMIT, [])
            except TimeoutError as e:
                raise StorageError(f"Transaction timed out after {limit}s") from e

        for callback in callbacks:
            await callback()

    @asynccontextmanager
    async def transaction(
        self, timeout: Optional[float] = None
    ) -> AsyncGenerator[AsyncSession, None]:
        """Open a write transaction; pass the yielded session to store methods."""
        async with self._session_scope(write=True, timeout=timeout) as session:
            yield session

    async def execute_transaction(
        self,
        fn: Callable[[AsyncSession], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``fn(session)`` in one transaction and return its result."""
        async with self._session_scope(write=True, timeout=timeout) as session:
            return await fn(session)

    async def _check_ownership(self, session: AsyncSession) -> None:
        """Every budget / rate limit touched in this transaction has one parent."""
        budgets = session.info.pop(_TOUCHED_BUDGETS, set())
        rate_limits = session.info.pop(_TOUCHED_RATE_LIMITS, set())
        if not budgets and not rate_limits:
            return

        await session.flush()
        for budget_id in sorted(budgets):
            if not await self._exists(session, TableBudget, budget_id):
                continue
            owners: list[str] = []
            for model, kind in (
                (TableVirtualKey, "virtual_key"),
                (TableTeam, "team"),
                (TableCustomer, "customer"),
            ):
                ids = await session.scalars(select(model.id).where(model.budget_id == budget_id))
                owners.extend(f"{kind}:{owner_id}" for owner_id in ids)
            try:
                validate_single_owner("budget", budget_id, owners)
            except ValidationError as e:
                raise ConflictError(e.message) from e

        for rate_limit_id in sorted(rate_limits):
            if not await self._exists(session, TableRateLimit, rate_limit_id):
                continue
            ids = await session.scalars(
                select(TableVirtualKey.id).where(TableVirtualKey.rate_limit_id == rate_limit_id)
            )
            try:
                validate_single_owner(
                    "rate limit", rate_limit_id, [f"virtual_key:{vk_id}" for vk_id in ids]
                )
            except ValidationError as e:
                raise ConflictError(e.message) from e

    # ========== Subscribers ==========

    def subscribe(self, callback: ConfigSubscriber) -> None:
        """Register a listener called with the new ClientConfig after each update."""
        self._subscribers.append(callback)

    async def _notify(self, config: ClientConfig) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(config)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.error("config subscriber callback failed: %s", exc)

    # ========== Helpers ==========

    @staticmethod
    async def _exists(session: AsyncSession, model: type[Base], entity_id: Any) -> bool:
        found = await session.scalar(select(model.id).where(model.id == entity_id))
        return found is not None

    @staticmethod
    async def _require(
        session: AsyncSession, model: type[RowT], entity_id: Any, entity: str
    ) -> RowT:
        row = await session.get(model, entity_id)
        if row is None:
            raise NotFoundError(entity=entity, entity_id=entity_id)
        return row

    @staticmethod
    async def _rows_by_id(
        session: AsyncSession, model: type[RowT], ids: set[Any]
    ) -> dict[Any, RowT]:
        if not ids:
            return {}
        rows = await session.scalars(select(model).where(model.id.in_(ids)))
        return {row.id: row for row in rows}

    async def _check_references(self, session: AsyncSession, row: Base) -> None:
        """Raise NotFoundError for dangling team / customer / budget / rate limit ids."""
        for attr, model, entity in (
            ("team_id", TableTeam, "team"),
            ("customer_id", TableCustomer, "customer"),
            ("budget_id", TableBudget, "budget"),
            ("rate_limit_id", TableRateLimit, "rate limit"),
        ):
            value = getattr(row, attr, None)
            if value and not await self._exists(session, model, value):
                raise NotFoundError(entity=entity, entity_id=value)

    @staticmethod
    async def _replace_singleton(session: AsyncSession, row: Base) -> None:
        await session.execute(delete(type(row)))
        session.add(row)
        await session.flush()

    # ========== Client config ==========

    async def get_client_config(
        self, *, session: Optional[AsyncSession] = None
    ) -> Optional[ClientConfig]:
        async with self._session_scope(session) as s:
            row = await s.scalar(select(TableClientConfig).limit(1))
            if row is None:
                return None
            return ClientConfig(**{name: getattr(row, name) for name in ClientConfig.model_fields})

    async def update_client_config(
        self, config: ClientConfig, *, session: Optional[AsyncSession] = None
    ) -> None:
        """Replace the client config. Subscribers are notified after commit."""
        async with self._session_scope(session, write=True) as s:
            await self._replace_singleton(s, TableClientConfig(**config.model_dump()))
            _after_commit(s, lambda: self._notify(config))

    # ========== Providers and keys ==========

    @staticmethod
    def _key_from_row(row: TableKey) -> Key:
        return Key(
            id=row.key_id,
            value=row.value,
            models=list(row.models or []),
            weight=row.weight,
            azure_key_config=(
                AzureKeyConfig.model_validate(row.azure_key_config) if row.azure_key_config else None
            ),
            vertex_key_config=(
                VertexKeyConfig.model_validate(row.vertex_key_config)
                if row.vertex_key_config
                else None
            ),
            bedrock_key_config=(
                BedrockKeyConfig.model_validate(row.bedrock_key_config)
                if row.bedrock_key_config
                else None
            ),
        )

    async def _load_providers(self, session: AsyncSession) -> dict[str, ProviderConfig]:
        providers = (await session.scalars(select(TableProvider).order_by(TableProvider.id))).all()
        keys = (await session.scalars(select(TableKey).order_by(TableKey.id))).all()

        keys_by_provider: dict[int, list[Key]] = {}
        for key_row in keys:
            keys_by_provider.setdefault(key_row.provider_id, []).append(self._key_from_row(key_row))

        result: dict[str, ProviderConfig] = {}
        for row in providers:
            result[row.name] = ProviderConfig(
                keys=keys_by_provider.get(row.id, []),
                network_config=(
                    NetworkConfig.model_validate(row.network_config) if row.network_config else None
                ),
                concurrency_and_buffer_size=(
                    ConcurrencyAndBufferSize.model_validate(row.concurrency_and_buffer_size)
                    if row.concurrency_and_buffer_size
                    else None
                ),
                proxy_config=(
                    ProxyConfig.model_validate(row.proxy_config) if row.proxy_config else None
                ),
                send_back_raw_response=row.send_back_raw_response,
                custom_provider_config=(
                    CustomProviderConfig.model_validate(row.custom_provider_config)
                    if row.custom_provider_config
                    else None
                ),
            )
        return result

    async def get_providers_config(
        self, *, redact: bool = True, session: Optional[AsyncSession] = None
    ) -> dict[str, ProviderConfig]:
        """All providers with their keys.

        Args:
            redact: Replace secrets with the redaction sentinel. Internal
                consumers that call upstream vendors pass ``False``.
        """
        async with self._session_scope(session) as s:
            providers = await self._load_providers(s)
        return redact_providers(providers) if redact else providers

    async def update_providers_config(
        self,
        providers: dict[str, ProviderConfig],
        *,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Replace the full provider set.

        Providers missing from ``providers`` are deleted with their keys.
        Keys are upserted by key id, so a surviving key keeps its row id and
        its virtual key associations. Redacted secrets resolve to the stored
        plaintext.

        Raises:
            ConflictError: If a key id appears more than once.
            ValidationError: If a redacted secret has no stored counterpart.
        """
        validate_provider_set(providers)
        async with self._session_scope(session, write=True) as s:
            stored = await self._load_providers(s)
            merged = merge_providers(providers, stored)

            provider_rows = {
                row.name: row for row in (await s.scalars(select(TableProvider))).all()
            }
            submitted_key_ids = [key.id for p in merged.values() for key in p.keys]
            existing_keys: dict[str, TableKey] = {}
            if submitted_key_ids:
                key_rows = await s.scalars(
                    select(TableKey)
                    .where(TableKey.key_id.in_(submitted_key_ids))
                    .order_by(TableKey.id)
                )
                for key_row in key_rows:
                    if key_row.key_id in existing_keys:
                        # Same id stored twice with different values: keep the oldest.
                        await s.execute(
                            delete(virtual_key_keys).where(virtual_key_keys.c.key_id == key_row.id)
                        )
                        await s.delete(key_row)
                        continue
                    existing_keys[key_row.key_id] = key_row

            for name, provider in merged.items():
                row = provider_rows.get(name)
                if row is None:
                    row = TableProvider(name=name)
                    s.add(row)
                    provider_rows[name] = row
                row.network_config = dump_optional(provider.network_config)
                row.concurrency_and_buffer_size = dump_optional(provider.concurrency_and_buffer_size)
                row.proxy_config = dump_optional(provider.proxy_config)
                row.send_back_raw_response = provider.send_back_raw_response
                row.custom_provider_config = dump_optional(provider.custom_provider_config)
            await s.flush()

            for name, provider in merged.items():
                provider_id = provider_rows[name].id
                for key in provider.keys:
                    key_row = existing_keys.get(key.id)
                    if key_row is None:
                        key_row = TableKey(key_id=key.id)
                        s.add(key_row)
                    key_row.value = key.value
                    key_row.provider_id = provider_id
                    key_row.provider = name
                    key_row.models = list(key.models)
                    key_row.weight = key.weight
                    key_row.azure_key_config = dump_optional(key.azure_key_config)
                    key_row.vertex_key_config = dump_optional(key.vertex_key_config)
                    key_row.bedrock_key_config = dump_optional(key.bedrock_key_config)
            await s.flush()

            # Keys moved off a removed provider were re-parented above, so the
            # cascade below only takes keys that are really gone.
            await s.execute(
                delete(virtual_key_keys).where(
                    virtual_key_keys.c.key_id.in_(
                        select(TableKey.id)
                        .join(TableProvider, TableProvider.id == TableKey.provider_id)
                        .where(TableProvider.name.not_in(list(merged)))
                    )
                )
            )
            await s.execute(delete(TableKey).where(
                TableKey.provider_id.in_(
                    select(TableProvider.id).where(TableProvider.name.not_in(list(merged)))
                )
            ))
            await s.execute(delete(TableProvider).where(TableProvider.name.not_in(list(merged))))

            submitted_provider_ids = [provider_rows[name].id for name in merged]
            stale = select(TableKey.id).where(
                TableKey.provider_id.in_(submitted_provider_ids),
                TableKey.key_id.not_in(submitted_key_ids),
            )
            await s.execute(delete(virtual_key_keys).where(virtual_key_keys.c.key_id.in_(stale)))
            await s.execute(
                delete(TableKey).where(
                    TableKey.provider_id.in_(submitted_provider_ids),
                    TableKey.key_id.not_in(submitted_key_ids),
                )
            )

        logger.info(
            "Replaced provider config: %d providers, %d keys",
            len(providers),
            len(submitted_key_ids),
        )

    async def delete_provider(
        self, name: str, *, session: Optional[AsyncSession] = None
    ) -> None:
        """Delete a provider and its keys. Virtual keys lose only the associations."""
        async with self._session_scope(session, write=True) as s:
            row = await s.scalar(select(TableProvider).where(TableProvider.name == name))
            if row is None:
                raise NotFoundError(entity="provider", entity_id=name)
            key_ids = select(TableKey.id).where(TableKey.provider_id == row.id)
            await s.execute(delete(virtual_key_keys).where(virtual_key_keys.c.key_id.in_(key_ids)))
            await s.execute(delete(TableKey).where(TableKey.provider_id == row.id))
            await s.execute(delete(TableProvider).where(TableProvider.id == row.id))
        logger.info("Deleted provider %s", name)

    async def get_keys_by_ids(
        self, ids: Sequence[str], *, session: Optional[AsyncSession] = None
    ) -> list[TableKey]:
        """Key rows (with plaintext values) for the given key ids."""
        if not ids:
            return []
        async with self._session_scope(session) as s:
            rows = await s.scalars(
                select(TableKey).where(TableKey.key_id.in_(list(ids))).order_by(TableKey.id)
            )
            return list(rows.all())

    # ========== MCP ==========

    async def get_mcp_config(
        self, *, session: Optional[AsyncSession] = None
    ) -> Optional[MCPConfig]:
        async with self._session_scope(session) as s:
            rows = (await s.scalars(select(TableMCPClient).order_by(TableMCPClient.id))).all()
        if not rows:
            return None
        return MCPConfig(
            client_configs=[
                MCPClientConfig(
                    name=row.name,
                    connection_type=row.connection_type,
                    connection_string=row.connection_string,
                    stdio_config=(
                        MCPStdioConfig.model_validate(row.stdio_config) if row.stdio_config else None
                    ),
                    tools_to_execute=list(row.tools_to_execute or []),
                    tools_to_skip=list(row.tools_to_skip or []),
                )
                for row in rows
            ]
        )

    async def update_mcp_config(
        self, config: MCPConfig, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            await s.execute(delete(TableMCPClient))
            s.add_all(
                TableMCPClient(
                    name=client.name,
                    connection_type=client.connection_type,
                    connection_string=client.connection_string,
                    stdio_config=dump_optional(client.stdio_config),
                    tools_to_execute=list(client.tools_to_execute),
                    tools_to_skip=list(client.tools_to_skip),
                )
                for client in config.client_configs
            )
            await s.flush()
        logger.info("Replaced MCP config: %d clients", len(config.client_configs))

    # ========== Env keys ==========

    async def get_env_keys(
        self, *, session: Optional[AsyncSession] = None
    ) -> dict[str, list[EnvKeyInfo]]:
        """Env-var bindings grouped by variable name."""
        async with self._session_scope(session) as s:
            rows = (await s.scalars(select(TableEnvKey).order_by(TableEnvKey.id))).all()
        result: dict[str, list[EnvKeyInfo]] = {}
        for row in rows:
            result.setdefault(row.env_var, []).append(
                EnvKeyInfo(
                    env_var=row.env_var,
                    provider=row.provider,
                    key_type=row.key_type,
                    config_path=row.config_path,
                    key_id=row.key_id,
                )
            )
        return result

    async def update_env_keys(
        self,
        keys: dict[str, list[EnvKeyInfo]],
        *,
        session: Optional[AsyncSession] = None,
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            await s.execute(delete(TableEnvKey))
            for env_var, infos in keys.items():
                s.add_all(
                    TableEnvKey(
                        env_var=env_var,
                        provider=info.provider,
                        key_type=info.key_type,
                        config_path=info.config_path,
                        key_id=info.key_id,
                    )
                    for info in infos
                )
            await s.flush()

    # ========== Vector store / log store / backend descriptor ==========

    async def _get_vector_store(self, session: AsyncSession) -> Optional[VectorStoreConfig]:
        row = await session.scalar(select(TableVectorStoreConfig).limit(1))
        if row is None:
            return None
        return VectorStoreConfig.model_validate(
            {"enabled": row.enabled, "type": row.type, "config": row.config}
        )

    async def get_vector_store_config(
        self, *, redact: bool = True, session: Optional[AsyncSession] = None
    ) -> Optional[VectorStoreConfig]:
        async with self._session_scope(session) as s:
            config = await self._get_vector_store(s)
        if config is None or not redact:
            return config
        return redact_vector_store(config)

    async def update_vector_store_config(
        self, config: VectorStoreConfig, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            merged = merge_vector_store(config, await self._get_vector_store(s))
            await self._replace_singleton(
                s,
                TableVectorStoreConfig(
                    enabled=merged.enabled,
                    type=merged.type,
                    config=merged.config.model_dump(mode="json"),
                ),
            )

    async def _get_log_store(self, session: AsyncSession) -> Optional[LogStoreConfig]:
        row = await session.scalar(select(TableLogStoreConfig).limit(1))
        if row is None:
            return None
        return LogStoreConfig.model_validate(
            {"enabled": row.enabled, "type": row.type, "config": row.config}
        )

    async def get_logs_store_config(
        self, *, redact: bool = True, session: Optional[AsyncSession] = None
    ) -> Optional[LogStoreConfig]:
        async with self._session_scope(session) as s:
            config = await self._get_log_store(s)
        if config is None or not redact:
            return config
        return redact_log_store(config)

    async def update_logs_store_config(
        self, config: LogStoreConfig, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            merged = merge_log_store(config, await self._get_log_store(s))
            await self._replace_singleton(
                s,
                TableLogStoreConfig(
                    enabled=merged.enabled,
                    type=merged.type,
                    config=merged.config.model_dump(mode="json"),
                ),
            )

    async def _get_backend(self, session: AsyncSession) -> Optional[StoreConfig]:
        row = await session.scalar(select(TableStoreBackend).limit(1))
        if row is None:
            return None
        return StoreConfig.model_validate({"type": row.type, "config": row.config})

    async def get_backend_descriptor(
        self, *, redact: bool = True, session: Optional[AsyncSession] = None
    ) -> Optional[StoreConfig]:
        """The backend descriptor persisted in the active backend, if any."""
        async with self._session_scope(session) as s:
            config = await self._get_backend(s)
        if config is None or not redact:
            return config
        return redact_store_config(config)

    async def update_backend_descriptor(
        self, config: StoreConfig, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            merged = merge_store_config(config, await self._get_backend(s))
            await self._replace_singleton(
                s,
                TableStoreBackend(type=merged.type, config=merged.config.model_dump(mode="json")),
            )

    # ========== Virtual keys ==========

    async def _expand_virtual_keys(
        self, session: AsyncSession, rows: Sequence[TableVirtualKey]
    ) -> list[VirtualKeyView]:
        if not rows:
            return []
        vk_ids = [row.id for row in rows]
        key_rows = await session.execute(
            select(virtual_key_keys.c.virtual_key_id, TableKey.id, TableKey.key_id, TableKey.models)
            .join(TableKey, TableKey.id == virtual_key_keys.c.key_id)
            .where(virtual_key_keys.c.virtual_key_id.in_(vk_ids))
            .order_by(TableKey.id)
        )
        refs: dict[str, list[KeyRef]] = {}
        for vk_id, row_id, key_id, models in key_rows:
            refs.setdefault(vk_id, []).append(KeyRef(id=row_id, key_id=key_id, models=list(models or [])))

        teams = await self._rows_by_id(session, TableTeam, {r.team_id for r in rows if r.team_id})
        customers = await self._rows_by_id(
            session, TableCustomer, {r.customer_id for r in rows if r.customer_id}
        )
        budgets = await self._rows_by_id(
            session, TableBudget, {r.budget_id for r in rows if r.budget_id}
        )
        rate_limits = await self._rows_by_id(
            session, TableRateLimit, {r.rate_limit_id for r in rows if r.rate_limit_id}
        )
        return [
            VirtualKeyView(
                virtual_key=row,
                keys=refs.get(row.id, []),
                team=teams.get(row.team_id),
                customer=customers.get(row.customer_id),
                budget=budgets.get(row.budget_id),
                rate_limit=rate_limits.get(row.rate_limit_id),
            )
            for row in rows
        ]

    async def get_virtual_keys(
        self, *, expand: bool = True, session: Optional[AsyncSession] = None
    ) -> list[VirtualKeyView]:
        async with self._session_scope(session) as s:
            rows = (
                await s.scalars(select(TableVirtualKey).order_by(TableVirtualKey.created_at))
            ).all()
            if not expand:
                return [VirtualKeyView(virtual_key=row) for row in rows]
            return await self._expand_virtual_keys(s, rows)

    async def get_virtual_key(
        self, vk_id: str, *, expand: bool = True, session: Optional[AsyncSession] = None
    ) -> VirtualKeyView:
        async with self._session_scope(session) as s:
            row = await self._require(s, TableVirtualKey, vk_id, "virtual key")
            if not expand:
                return VirtualKeyView(virtual_key=row)
            return (await self._expand_virtual_keys(s, [row]))[0]

    async def _attach_keys(
        self, session: AsyncSession, vk_id: str, key_ids: Sequence[str]
    ) -> None:
        if not key_ids:
            return
        wanted = list(dict.fromkeys(key_ids))
        rows = await session.execute(
            select(TableKey.key_id, TableKey.id).where(TableKey.key_id.in_(wanted))
        )
        row_ids: dict[str, int] = {}
        for key_id, row_id in rows:
            row_ids.setdefault(key_id, row_id)
        missing = [key_id for key_id in wanted if key_id not in row_ids]
        if missing:
            raise NotFoundError(entity="key", entity_id=", ".join(missing))
        await session.execute(
            insert(virtual_key_keys),
            [{"virtual_key_id": vk_id, "key_id": row_ids[key_id]} for key_id in wanted],
        )

    async def create_virtual_key(
        self,
        virtual_key: TableVirtualKey,
        *,
        key_ids: Sequence[str] = (),
        session: Optional[AsyncSession] = None,
    ) -> TableVirtualKey:
        """Insert a virtual key and attach the keys with the given key ids."""
        async with self._session_scope(session, write=True) as s:
            await self._check_references(s, virtual_key)
            s.add(virtual_key)
            await s.flush()
            await self._attach_keys(s, virtual_key.id, key_ids)
            _touch(s, _TOUCHED_BUDGETS, virtual_key.budget_id)
            _touch(s, _TOUCHED_RATE_LIMITS, virtual_key.rate_limit_id)
            return virtual_key

    async def update_virtual_key(
        self,
        virtual_key: TableVirtualKey,
        *,
        key_ids: Optional[Sequence[str]] = None,
        session: Optional[AsyncSession] = None,
    ) -> TableVirtualKey:
        """Overwrite a virtual key.

        With ``key_ids=None`` the key associations are kept as they are;
        otherwise they are replaced by ``key_ids``. A budget or rate limit
        that the key stops pointing at is deleted.
        """
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableVirtualKey, virtual_key.id, "virtual key")
            await self._check_references(s, virtual_key)
            old_budget, old_rate_limit = (
                await s.execute(
                    select(TableVirtualKey.budget_id, TableVirtualKey.rate_limit_id).where(
                        TableVirtualKey.id == row.id
                    )
                )
            ).one()

            _copy_columns(virtual_key, row)
            await s.flush()

            if old_budget and old_budget != row.budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == old_budget))
            if old_rate_limit and old_rate_limit != row.rate_limit_id:
                await s.execute(delete(TableRateLimit).where(TableRateLimit.id == old_rate_limit))

            if key_ids is not None:
                await s.execute(
                    delete(virtual_key_keys).where(virtual_key_keys.c.virtual_key_id == row.id)
                )
                await self._attach_keys(s, row.id, key_ids)

            _touch(s, _TOUCHED_BUDGETS, row.budget_id)
            _touch(s, _TOUCHED_RATE_LIMITS, row.rate_limit_id)
            await s.refresh(row)
            return row

    async def delete_virtual_key(
        self, vk_id: str, *, session: Optional[AsyncSession] = None
    ) -> None:
        """Delete a virtual key, its key associations, budget and rate limit."""
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableVirtualKey, vk_id, "virtual key")
            budget_id, rate_limit_id = row.budget_id, row.rate_limit_id
            await s.execute(delete(virtual_key_keys).where(virtual_key_keys.c.virtual_key_id == vk_id))
            await s.execute(delete(TableVirtualKey).where(TableVirtualKey.id == vk_id))
            if budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == budget_id))
            if rate_limit_id:
                await s.execute(delete(TableRateLimit).where(TableRateLimit.id == rate_limit_id))

    # ========== Teams ==========

    async def _expand_teams(
        self, session: AsyncSession, rows: Sequence[TableTeam]
    ) -> list[TeamView]:
        customers = await self._rows_by_id(
            session, TableCustomer, {r.customer_id for r in rows if r.customer_id}
        )
        budgets = await self._rows_by_id(
            session, TableBudget, {r.budget_id for r in rows if r.budget_id}
        )
        return [
            TeamView(
                team=row,
                customer=customers.get(row.customer_id),
                budget=budgets.get(row.budget_id),
            )
            for row in rows
        ]

    async def get_teams(
        self,
        customer_id: Optional[str] = None,
        *,
        expand: bool = True,
        session: Optional[AsyncSession] = None,
    ) -> list[TeamView]:
        """All teams, or only those of ``customer_id``."""
        stmt = select(TableTeam).order_by(TableTeam.created_at)
        if customer_id:
            stmt = stmt.where(TableTeam.customer_id == customer_id)
        async with self._session_scope(session) as s:
            rows = (await s.scalars(stmt)).all()
            if not expand:
                return [TeamView(team=row) for row in rows]
            return await self._expand_teams(s, rows)

    async def get_team(
        self, team_id: str, *, expand: bool = True, session: Optional[AsyncSession] = None
    ) -> TeamView:
        async with self._session_scope(session) as s:
            row = await self._require(s, TableTeam, team_id, "team")
            if not expand:
                return TeamView(team=row)
            return (await self._expand_teams(s, [row]))[0]

    async def create_team(
        self, team: TableTeam, *, session: Optional[AsyncSession] = None
    ) -> TableTeam:
        async with self._session_scope(session, write=True) as s:
            await self._check_references(s, team)
            s.add(team)
            await s.flush()
            _touch(s, _TOUCHED_BUDGETS, team.budget_id)
            return team

    async def update_team(
        self, team: TableTeam, *, session: Optional[AsyncSession] = None
    ) -> TableTeam:
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableTeam, team.id, "team")
            await self._check_references(s, team)
            old_budget = await s.scalar(select(TableTeam.budget_id).where(TableTeam.id == row.id))
            _copy_columns(team, row)
            await s.flush()
            if old_budget and old_budget != row.budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == old_budget))
            _touch(s, _TOUCHED_BUDGETS, row.budget_id)
            await s.refresh(row)
            return row

    async def delete_team(self, team_id: str, *, session: Optional[AsyncSession] = None) -> None:
        """Delete a team and its budget. Its virtual keys are detached, not deleted."""
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableTeam, team_id, "team")
            budget_id = row.budget_id
            await s.execute(
                update(TableVirtualKey)
                .where(TableVirtualKey.team_id == team_id)
                .values(team_id=None)
            )
            await s.execute(delete(TableTeam).where(TableTeam.id == team_id))
            if budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == budget_id))

    # ========== Customers ==========

    async def _expand_customers(
        self, session: AsyncSession, rows: Sequence[TableCustomer]
    ) -> list[CustomerView]:
        ids = [row.id for row in rows]
        teams: dict[str, list[TableTeam]] = {}
        if ids:
            team_rows = await session.scalars(
                select(TableTeam).where(TableTeam.customer_id.in_(ids)).order_by(TableTeam.created_at)
            )
            for team in team_rows:
                teams.setdefault(team.customer_id, []).append(team)
        budgets = await self._rows_by_id(
            session, TableBudget, {r.budget_id for r in rows if r.budget_id}
        )
        return [
            CustomerView(
                customer=row,
                teams=teams.get(row.id, []),
                budget=budgets.get(row.budget_id),
            )
            for row in rows
        ]

    async def get_customers(
        self, *, expand: bool = True, session: Optional[AsyncSession] = None
    ) -> list[CustomerView]:
        async with self._session_scope(session) as s:
            rows = (await s.scalars(select(TableCustomer).order_by(TableCustomer.created_at))).all()
            if not expand:
                return [CustomerView(customer=row) for row in rows]
            return await self._expand_customers(s, rows)

    async def get_customer(
        self, customer_id: str, *, expand: bool = True, session: Optional[AsyncSession] = None
    ) -> CustomerView:
        async with self._session_scope(session) as s:
            row = await self._require(s, TableCustomer, customer_id, "customer")
            if not expand:
                return CustomerView(customer=row)
            return (await self._expand_customers(s, [row]))[0]

    async def create_customer(
        self, customer: TableCustomer, *, session: Optional[AsyncSession] = None
    ) -> TableCustomer:
        async with self._session_scope(session, write=True) as s:
            await self._check_references(s, customer)
            s.add(customer)
            await s.flush()
            _touch(s, _TOUCHED_BUDGETS, customer.budget_id)
            return customer

    async def update_customer(
        self, customer: TableCustomer, *, session: Optional[AsyncSession] = None
    ) -> TableCustomer:
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableCustomer, customer.id, "customer")
            await self._check_references(s, customer)
            old_budget = await s.scalar(
                select(TableCustomer.budget_id).where(TableCustomer.id == row.id)
            )
            _copy_columns(customer, row)
            await s.flush()
            if old_budget and old_budget != row.budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == old_budget))
            _touch(s, _TOUCHED_BUDGETS, row.budget_id)
            await s.refresh(row)
            return row

    async def delete_customer(
        self, customer_id: str, *, session: Optional[AsyncSession] = None
    ) -> None:
        """Delete a customer and its budget. Teams and virtual keys are detached."""
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableCustomer, customer_id, "customer")
            budget_id = row.budget_id
            await s.execute(
                update(TableTeam).where(TableTeam.customer_id == customer_id).values(customer_id=None)
            )
            await s.execute(
                update(TableVirtualKey)
                .where(TableVirtualKey.customer_id == customer_id)
                .values(customer_id=None)
            )
            await s.execute(delete(TableCustomer).where(TableCustomer.id == customer_id))
            if budget_id:
                await s.execute(delete(TableBudget).where(TableBudget.id == budget_id))

    # ========== Budgets ==========

    async def get_budgets(self, *, session: Optional[AsyncSession] = None) -> list[TableBudget]:
        async with self._session_scope(session) as s:
            rows = await s.scalars(select(TableBudget).order_by(TableBudget.created_at))
            return list(rows.all())

    async def get_budget(
        self, budget_id: str, *, session: Optional[AsyncSession] = None
    ) -> TableBudget:
        async with self._session_scope(session) as s:
            return await self._require(s, TableBudget, budget_id, "budget")

    async def create_budget(
        self, budget: TableBudget, *, session: Optional[AsyncSession] = None
    ) -> TableBudget:
        """Insert a budget.

        The budget must be attached to a parent before the transaction
        commits, so create it and its owner in the same transaction.
        """
        async with self._session_scope(session, write=True) as s:
            s.add(budget)
            await s.flush()
            _touch(s, _TOUCHED_BUDGETS, budget.id)
            return budget

    async def update_budget(
        self, budget: TableBudget, *, session: Optional[AsyncSession] = None
    ) -> TableBudget:
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableBudget, budget.id, "budget")
            _copy_columns(budget, row)
            await s.flush()
            _touch(s, _TOUCHED_BUDGETS, row.id)
            await s.refresh(row)
            return row

    async def update_budgets(
        self, budgets: Sequence[TableBudget], *, session: Optional[AsyncSession] = None
    ) -> None:
        """Update several budgets atomically (e.g. usage resets)."""
        async with self._session_scope(session, write=True) as s:
            for budget in budgets:
                await self.update_budget(budget, session=s)

    async def delete_budget(
        self, budget_id: str, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            await self._require(s, TableBudget, budget_id, "budget")
            for model in (TableVirtualKey, TableTeam, TableCustomer):
                await s.execute(
                    update(model).where(model.budget_id == budget_id).values(budget_id=None)
                )
            await s.execute(delete(TableBudget).where(TableBudget.id == budget_id))

    # ========== Rate limits ==========

    async def get_rate_limit(
        self, rate_limit_id: str, *, session: Optional[AsyncSession] = None
    ) -> TableRateLimit:
        async with self._session_scope(session) as s:
            return await self._require(s, TableRateLimit, rate_limit_id, "rate limit")

    async def create_rate_limit(
        self, rate_limit: TableRateLimit, *, session: Optional[AsyncSession] = None
    ) -> TableRateLimit:
        async with self._session_scope(session, write=True) as s:
            s.add(rate_limit)
            await s.flush()
            _touch(s, _TOUCHED_RATE_LIMITS, rate_limit.id)
            return rate_limit

    async def update_rate_limit(
        self, rate_limit: TableRateLimit, *, session: Optional[AsyncSession] = None
    ) -> TableRateLimit:
        async with self._session_scope(session, write=True) as s:
            row = await self._require(s, TableRateLimit, rate_limit.id, "rate limit")
            _copy_columns(rate_limit, row)
            await s.flush()
            _touch(s, _TOUCHED_RATE_LIMITS, row.id)
            await s.refresh(row)
            return row

    async def update_rate_limits(
        self, rate_limits: Sequence[TableRateLimit], *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            for rate_limit in rate_limits:
                await self.update_rate_limit(rate_limit, session=s)

    async def delete_rate_limit(
        self, rate_limit_id: str, *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            await self._require(s, TableRateLimit, rate_limit_id, "rate limit")
            await s.execute(
                update(TableVirtualKey)
                .where(TableVirtualKey.rate_limit_id == rate_limit_id)
                .values(rate_limit_id=None)
            )
            await s.execute(delete(TableRateLimit).where(TableRateLimit.id == rate_limit_id))

    # ========== Plugins ==========

    async def get_plugins(self, *, session: Optional[AsyncSession] = None) -> list[TablePlugin]:
        async with self._session_scope(session) as s:
            rows = await s.scalars(select(TablePlugin).order_by(TablePlugin.name))
            return list(rows.all())

    async def get_plugin(
        self, name: str, *, session: Optional[AsyncSession] = None
    ) -> TablePlugin:
        async with self._session_scope(session) as s:
            row = await s.scalar(select(TablePlugin).where(TablePlugin.name == name))
            if row is None:
                raise NotFoundError(entity="plugin", entity_id=name)
            return row

    async def create_plugin(
        self, plugin: TablePlugin, *, session: Optional[AsyncSession] = None
    ) -> TablePlugin:
        async with self._session_scope(session, write=True) as s:
            existing = await s.scalar(select(TablePlugin.id).where(TablePlugin.name == plugin.name))
            if existing is not None:
                raise ConflictError(f"plugin already exists: {plugin.name}")
            s.add(plugin)
            await s.flush()
            return plugin

    async def update_plugin(
        self, plugin: TablePlugin, *, session: Optional[AsyncSession] = None
    ) -> TablePlugin:
        """Replace the plugin with the same name (delete then insert)."""
        async with self._session_scope(session, write=True) as s:
            await s.execute(delete(TablePlugin).where(TablePlugin.name == plugin.name))
            replacement = TablePlugin(
                name=plugin.name,
                enabled=True if plugin.enabled is None else plugin.enabled,
                config=plugin.config,
            )
            s.add(replacement)
            await s.flush()
            return replacement

    async def delete_plugin(self, name: str, *, session: Optional[AsyncSession] = None) -> None:
        async with self._session_scope(session, write=True) as s:
            result = await s.execute(delete(TablePlugin).where(TablePlugin.name == name))
            if not result.rowcount:
                raise NotFoundError(entity="plugin", entity_id=name)

    # ========== Generic config entries ==========

    async def get_config(self, key: str, *, session: Optional[AsyncSession] = None) -> TableConfig:
        async with self._session_scope(session) as s:
            row = await s.scalar(select(TableConfig).where(TableConfig.key == key))
            if row is None:
                raise NotFoundError(entity="config", entity_id=key)
            return row

    async def update_config(
        self, key: str, value: Optional[str], *, session: Optional[AsyncSession] = None
    ) -> TableConfig:
        """Insert or overwrite the entry for ``key``."""
        async with self._session_scope(session, write=True) as s:
            row = await s.scalar(select(TableConfig).where(TableConfig.key == key))
            if row is None:
                row = TableConfig(key=key)
                s.add(row)
            row.value = value
            await s.flush()
            return row

    # ========== Model pricing ==========

    async def get_model_prices(
        self, *, session: Optional[AsyncSession] = None
    ) -> list[TableModelPricing]:
        async with self._session_scope(session) as s:
            rows = await s.scalars(
                select(TableModelPricing).order_by(TableModelPricing.provider, TableModelPricing.model)
            )
            return list(rows.all())

    async def create_model_prices(
        self, prices: Sequence[TableModelPricing], *, session: Optional[AsyncSession] = None
    ) -> None:
        async with self._session_scope(session, write=True) as s:
            s.add_all(prices)
            await s.flush()

    async def delete_model_prices(self, *, session: Optional[AsyncSession] = None) -> None:
        """Delete every pricing row. Pair with create_model_prices to replace the table."""
        async with self._session_scope(session, write=True) as s:
            await s.execute(delete(TableModelPricing))

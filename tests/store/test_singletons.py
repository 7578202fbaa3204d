"""Tests for the single-row configuration domains."""

from sqlalchemy import func, select

from configstore.config import PostgresConfig, SQLiteConfig, StoreConfig
from configstore.db.models import TableClientConfig, TableVectorStoreConfig
from configstore.redaction import REDACTED_VALUE
from configstore.types import (
    ClientConfig,
    LogStoreConfig,
    RedisConfig,
    VectorStoreConfig,
    WeaviateConfig,
)


async def row_count(store, model) -> int:
    async with store.db.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestClientConfig:
    async def test_absent_by_default(self, store):
        assert await store.get_client_config() is None

    async def test_round_trip(self, store):
        config = ClientConfig(
            drop_excess_requests=True,
            initial_pool_size=500,
            prometheus_labels=["team", "env"],
            allowed_origins=["https://admin.example.com"],
            enforce_governance_header=True,
        )
        await store.update_client_config(config)
        assert await store.get_client_config() == config

    async def test_update_keeps_single_row(self, store):
        await store.update_client_config(ClientConfig(initial_pool_size=1))
        await store.update_client_config(ClientConfig(initial_pool_size=2))
        assert await row_count(store, TableClientConfig) == 1
        assert (await store.get_client_config()).initial_pool_size == 2

    async def test_subscribers_notified_after_commit(self, store):
        received = []

        def sync_listener(config):
            received.append(("sync", config.initial_pool_size))

        async def async_listener(config):
            received.append(("async", config.initial_pool_size))

        store.subscribe(sync_listener)
        store.subscribe(async_listener)
        await store.update_client_config(ClientConfig(initial_pool_size=42))

        assert received == [("sync", 42), ("async", 42)]

    async def test_failing_subscriber_does_not_fail_update(self, store):
        def broken(config):
            raise RuntimeError("listener down")

        store.subscribe(broken)
        await store.update_client_config(ClientConfig(initial_pool_size=7))
        assert (await store.get_client_config()).initial_pool_size == 7

    async def test_no_notification_on_rollback(self, store):
        received = []
        store.subscribe(received.append)

        async def update_then_fail(session):
            await store.update_client_config(ClientConfig(), session=session)
            raise RuntimeError("abort")

        try:
            await store.execute_transaction(update_then_fail)
        except RuntimeError:
            pass

        assert received == []
        assert await store.get_client_config() is None


class TestVectorStoreConfig:
    async def test_round_trip_redacted(self, store):
        config = VectorStoreConfig(
            enabled=True,
            type="weaviate",
            config=WeaviateConfig(scheme="https", host="weaviate:8080", api_key="wv-secret"),
        )
        await store.update_vector_store_config(config)

        redacted = await store.get_vector_store_config()
        assert redacted.config.api_key == REDACTED_VALUE
        assert redacted.config.host == "weaviate:8080"
        assert await store.get_vector_store_config(redact=False) == config

    async def test_sentinel_keeps_stored_secret(self, store):
        await store.update_vector_store_config(
            VectorStoreConfig(enabled=True, type="redis", config=RedisConfig(password="r-secret"))
        )
        redacted = await store.get_vector_store_config()

        await store.update_vector_store_config(redacted)

        stored = await store.get_vector_store_config(redact=False)
        assert stored.config.password == "r-secret"
        assert await row_count(store, TableVectorStoreConfig) == 1

    async def test_switching_variant_takes_new_config(self, store):
        await store.update_vector_store_config(
            VectorStoreConfig(type="redis", config=RedisConfig(password="r-secret"))
        )
        await store.update_vector_store_config(
            VectorStoreConfig(type="weaviate", config=WeaviateConfig(api_key="wv"))
        )
        stored = await store.get_vector_store_config(redact=False)
        assert stored.type == "weaviate"
        assert stored.config.api_key == "wv"


class TestLogStoreConfig:
    async def test_round_trip(self, store):
        config = LogStoreConfig(enabled=True, type="sqlite", config=SQLiteConfig(path="/tmp/logs.db"))
        await store.update_logs_store_config(config)
        assert await store.get_logs_store_config() == config

    async def test_postgres_password(self, store):
        await store.update_logs_store_config(
            LogStoreConfig(
                enabled=True,
                type="postgres",
                config=PostgresConfig(host="pg", user="logs", password="pg-secret", db_name="logs"),
            )
        )
        redacted = await store.get_logs_store_config()
        assert redacted.config.password == REDACTED_VALUE

        await store.update_logs_store_config(redacted)
        assert (await store.get_logs_store_config(redact=False)).config.password == "pg-secret"


class TestBackendDescriptor:
    async def test_absent_by_default(self, store):
        assert await store.get_backend_descriptor() is None

    async def test_round_trip_redacted(self, store):
        descriptor = StoreConfig(
            type="postgres",
            config=PostgresConfig(host="pg", user="gw", password="pg-secret", db_name="config"),
        )
        await store.update_backend_descriptor(descriptor)

        redacted = await store.get_backend_descriptor()
        assert redacted.config.password == REDACTED_VALUE
        await store.update_backend_descriptor(redacted)
        assert (await store.get_backend_descriptor(redact=False)).same_backend(descriptor)

"""Tests for MCP clients, env-key bindings, plugins, config entries and pricing."""

import pytest

from configstore.db.models import TableModelPricing, TablePlugin
from configstore.exceptions import ConflictError, NotFoundError
from configstore.types import EnvKeyInfo, MCPClientConfig, MCPConfig, MCPStdioConfig


class TestMCPConfig:
    async def test_absent_by_default(self, store):
        assert await store.get_mcp_config() is None

    async def test_replace(self, store):
        first = MCPConfig(
            client_configs=[
                MCPClientConfig(
                    name="filesystem",
                    connection_type="stdio",
                    stdio_config=MCPStdioConfig(command="mcp-fs", args=["--root", "/srv"]),
                    tools_to_skip=["delete_file"],
                ),
                MCPClientConfig(name="search", connection_type="http", connection_string="http://search:3000"),
            ]
        )
        await store.update_mcp_config(first)
        assert await store.get_mcp_config() == first

        second = MCPConfig(
            client_configs=[
                MCPClientConfig(name="search", connection_type="sse", connection_string="http://search:3001/sse")
            ]
        )
        await store.update_mcp_config(second)
        assert await store.get_mcp_config() == second


class TestEnvKeys:
    async def test_grouped_by_env_var(self, store):
        keys = {
            "OPENAI_API_KEY": [
                EnvKeyInfo(
                    env_var="OPENAI_API_KEY",
                    provider="openai",
                    key_type="api_key",
                    config_path="providers.openai.keys[0].value",
                    key_id="k1",
                ),
                EnvKeyInfo(
                    env_var="OPENAI_API_KEY",
                    provider="openai",
                    key_type="api_key",
                    config_path="providers.openai.keys[1].value",
                    key_id="k2",
                ),
            ],
            "AWS_SECRET_ACCESS_KEY": [
                EnvKeyInfo(
                    env_var="AWS_SECRET_ACCESS_KEY",
                    provider="bedrock",
                    key_type="bedrock_secret_key",
                    config_path="providers.bedrock.keys[0].bedrock_key_config.secret_key",
                    key_id="k3",
                )
            ],
        }
        await store.update_env_keys(keys)
        assert await store.get_env_keys() == keys

        await store.update_env_keys({})
        assert await store.get_env_keys() == {}


class TestPlugins:
    async def test_create_get_list(self, store):
        await store.create_plugin(TablePlugin(name="semantic-cache", config={"ttl": 60}))
        await store.create_plugin(TablePlugin(name="audit", enabled=False))

        plugin = await store.get_plugin("semantic-cache")
        assert plugin.enabled is True
        assert plugin.config == {"ttl": 60}
        assert [p.name for p in await store.get_plugins()] == ["audit", "semantic-cache"]

    async def test_create_duplicate(self, store):
        await store.create_plugin(TablePlugin(name="audit"))
        with pytest.raises(ConflictError):
            await store.create_plugin(TablePlugin(name="audit"))

    async def test_update_replaces_by_name(self, store):
        await store.create_plugin(TablePlugin(name="audit", config={"level": "info"}))
        await store.update_plugin(TablePlugin(name="audit", enabled=False, config={"level": "debug"}))

        plugin = await store.get_plugin("audit")
        assert plugin.enabled is False
        assert plugin.config == {"level": "debug"}
        assert len(await store.get_plugins()) == 1

    async def test_delete(self, store):
        await store.create_plugin(TablePlugin(name="audit"))
        await store.delete_plugin("audit")
        with pytest.raises(NotFoundError):
            await store.get_plugin("audit")
        with pytest.raises(NotFoundError):
            await store.delete_plugin("audit")


class TestConfigEntries:
    async def test_upsert(self, store):
        with pytest.raises(NotFoundError):
            await store.get_config("default_team")

        await store.update_config("default_team", "team-1")
        await store.update_config("default_team", "team-2")

        entry = await store.get_config("default_team")
        assert entry.value == "team-2"


class TestModelPricing:
    async def test_replace_in_one_transaction(self, store):
        await store.create_model_prices(
            [
                TableModelPricing(
                    model="gpt-4o", provider="openai", input_cost_per_token=2.5e-6, output_cost_per_token=1e-5
                ),
                TableModelPricing(model="claude", provider="anthropic", input_cost_per_token=3e-6),
            ]
        )

        async def replace(session):
            await store.delete_model_prices(session=session)
            await store.create_model_prices(
                [TableModelPricing(model="gpt-4o", provider="openai", input_cost_per_token=2e-6)],
                session=session,
            )

        await store.execute_transaction(replace)

        prices = await store.get_model_prices()
        assert [(p.model, p.input_cost_per_token, p.mode) for p in prices] == [("gpt-4o", 2e-6, "chat")]

    async def test_duplicate_model_conflicts(self, store):
        row = dict(model="gpt-4o", provider="openai", mode="chat")
        with pytest.raises(ConflictError):
            await store.create_model_prices([TableModelPricing(**row), TableModelPricing(**row)])
        assert await store.get_model_prices() == []

"""Tests for virtual keys, teams, customers, budgets and rate limits."""

import pytest

from configstore.db.models import (
    TableBudget,
    TableCustomer,
    TableRateLimit,
    TableTeam,
    TableVirtualKey,
)
from configstore.exceptions import ConflictError, NotFoundError
from configstore.types import Key, ProviderConfig


@pytest.fixture
async def keys(store):
    await store.update_providers_config(
        {
            "openai": ProviderConfig(
                keys=[
                    Key(id="k1", value="sk-1", models=["gpt-4o"]),
                    Key(id="k2", value="sk-2"),
                ]
            )
        }
    )


@pytest.fixture
async def customer(store):
    return await store.create_customer(TableCustomer(id="cust-1", name="Acme"))


@pytest.fixture
async def team(store, customer):
    return await store.create_team(TableTeam(id="team-1", name="Platform", customer_id=customer.id))


async def create_vk_with_budget(store, vk_id="vk-1", key_ids=("k1",), budget_id="b-1"):
    async def create(session):
        await store.create_budget(
            TableBudget(id=budget_id, max_limit=100.0, reset_duration="1M"), session=session
        )
        await store.create_rate_limit(
            TableRateLimit(id=f"rl-{vk_id}", request_max_limit=60, request_reset_duration="1m"),
            session=session,
        )
        return await store.create_virtual_key(
            TableVirtualKey(
                id=vk_id,
                name=f"name-{vk_id}",
                value=f"vk-value-{vk_id}",
                budget_id=budget_id,
                rate_limit_id=f"rl-{vk_id}",
            ),
            key_ids=key_ids,
            session=session,
        )

    return await store.execute_transaction(create)


class TestVirtualKeys:
    async def test_create_and_expand(self, store, keys, team):
        await store.create_virtual_key(
            TableVirtualKey(id="vk-1", name="ci", value="vk-ci", team_id=team.id),
            key_ids=["k1", "k2"],
        )

        view = await store.get_virtual_key("vk-1")
        assert view.virtual_key.name == "ci"
        assert view.key_ids == ["k1", "k2"]
        assert view.keys[0].models == ["gpt-4o"]
        assert not hasattr(view.keys[0], "value")
        assert view.team.id == "team-1"
        assert view.customer is None

    async def test_get_without_expand(self, store, keys):
        await store.create_virtual_key(
            TableVirtualKey(id="vk-1", name="ci", value="vk-ci"), key_ids=["k1"]
        )
        view = await store.get_virtual_key("vk-1", expand=False)
        assert view.keys == []
        assert view.team is None

    async def test_unknown_key_id(self, store, keys):
        with pytest.raises(NotFoundError):
            await store.create_virtual_key(
                TableVirtualKey(id="vk-1", name="ci", value="vk-ci"), key_ids=["nope"]
            )
        assert await store.get_virtual_keys() == []

    async def test_unknown_team(self, store):
        with pytest.raises(NotFoundError, match="team"):
            await store.create_virtual_key(
                TableVirtualKey(id="vk-1", name="ci", value="vk-ci", team_id="missing")
            )

    async def test_duplicate_name_conflicts(self, store):
        await store.create_virtual_key(TableVirtualKey(id="vk-1", name="ci", value="a"))
        with pytest.raises(ConflictError):
            await store.create_virtual_key(TableVirtualKey(id="vk-2", name="ci", value="b"))

    async def test_expanded_budget_and_rate_limit(self, store, keys):
        await create_vk_with_budget(store)
        view = await store.get_virtual_key("vk-1")
        assert view.budget.max_limit == 100.0
        assert view.rate_limit.request_max_limit == 60

    async def test_budget_only_update_keeps_keys(self, store, keys):
        await create_vk_with_budget(store, key_ids=("k1", "k2"))

        async def swap_budget(session):
            await store.create_budget(
                TableBudget(id="b-2", max_limit=250.0, reset_duration="1d"), session=session
            )
            await store.update_virtual_key(
                TableVirtualKey(id="vk-1", budget_id="b-2"), session=session
            )

        await store.execute_transaction(swap_budget)

        view = await store.get_virtual_key("vk-1")
        assert view.key_ids == ["k1", "k2"]
        assert view.budget.id == "b-2"
        assert view.virtual_key.name == "name-vk-1"
        with pytest.raises(NotFoundError):
            await store.get_budget("b-1")

    async def test_update_replaces_key_set(self, store, keys):
        await store.create_virtual_key(
            TableVirtualKey(id="vk-1", name="ci", value="vk-ci"), key_ids=["k1"]
        )
        updated = await store.update_virtual_key(
            TableVirtualKey(id="vk-1", description="rotated"), key_ids=["k2"]
        )
        assert updated.description == "rotated"
        assert (await store.get_virtual_key("vk-1")).key_ids == ["k2"]

    async def test_update_unknown(self, store):
        with pytest.raises(NotFoundError):
            await store.update_virtual_key(TableVirtualKey(id="missing", name="x"))

    async def test_delete_removes_owned_budget_and_rate_limit(self, store, keys):
        await create_vk_with_budget(store)

        await store.delete_virtual_key("vk-1")

        with pytest.raises(NotFoundError):
            await store.get_virtual_key("vk-1")
        with pytest.raises(NotFoundError):
            await store.get_budget("b-1")
        with pytest.raises(NotFoundError):
            await store.get_rate_limit("rl-vk-1")
        assert len(await store.get_keys_by_ids(["k1"])) == 1


class TestTeams:
    async def test_filter_by_customer(self, store, team):
        await store.create_team(TableTeam(id="team-2", name="Solo"))

        assert [v.team.id for v in await store.get_teams()] == ["team-1", "team-2"]
        views = await store.get_teams(customer_id="cust-1")
        assert [v.team.id for v in views] == ["team-1"]
        assert views[0].customer.name == "Acme"

    async def test_update(self, store, team):
        await store.update_team(TableTeam(id=team.id, name="Infra"))
        view = await store.get_team(team.id)
        assert view.team.name == "Infra"
        assert view.team.customer_id == "cust-1"

    async def test_delete_detaches_virtual_keys(self, store, team):
        await store.create_virtual_key(
            TableVirtualKey(id="vk-1", name="ci", value="vk-ci", team_id=team.id)
        )
        await store.delete_team(team.id)

        view = await store.get_virtual_key("vk-1")
        assert view.virtual_key.team_id is None
        with pytest.raises(NotFoundError):
            await store.get_team(team.id)


class TestCustomers:
    async def test_expand_teams_and_budget(self, store, team):
        async def attach_budget(session):
            await store.create_budget(
                TableBudget(id="b-cust", max_limit=1000.0, reset_duration="1M"), session=session
            )
            await store.update_customer(TableCustomer(id="cust-1", budget_id="b-cust"), session=session)

        await store.execute_transaction(attach_budget)

        [view] = await store.get_customers()
        assert [t.id for t in view.teams] == ["team-1"]
        assert view.budget.max_limit == 1000.0

    async def test_delete_detaches_teams(self, store, team):
        await store.delete_customer("cust-1")
        view = await store.get_team(team.id)
        assert view.team.customer_id is None
        assert view.customer is None

    async def test_get_unknown(self, store):
        with pytest.raises(NotFoundError):
            await store.get_customer("missing")


class TestBudgetOwnership:
    async def test_orphan_budget_rejected(self, store):
        with pytest.raises(ConflictError, match="not referenced"):
            await store.create_budget(TableBudget(id="b-1", max_limit=1.0, reset_duration="1d"))
        assert await store.get_budgets() == []

    async def test_shared_budget_rejected(self, store, team):
        async def share(session):
            await store.create_budget(
                TableBudget(id="b-1", max_limit=1.0, reset_duration="1d"), session=session
            )
            await store.update_team(TableTeam(id="team-1", budget_id="b-1"), session=session)
            await store.update_customer(TableCustomer(id="cust-1", budget_id="b-1"), session=session)

        with pytest.raises(ConflictError, match="more than one parent"):
            await store.execute_transaction(share)
        assert (await store.get_team("team-1")).budget is None

    async def test_update_budgets_atomically(self, store, keys):
        await create_vk_with_budget(store, vk_id="vk-1", budget_id="b-1")
        await create_vk_with_budget(store, vk_id="vk-2", budget_id="b-2")

        await store.update_budgets(
            [
                TableBudget(id="b-1", current_usage=12.5),
                TableBudget(id="b-2", current_usage=3.0),
            ]
        )

        budgets = {b.id: b for b in await store.get_budgets()}
        assert budgets["b-1"].current_usage == 12.5
        assert budgets["b-1"].max_limit == 100.0
        assert budgets["b-2"].current_usage == 3.0

    async def test_update_budgets_rolls_back_on_missing(self, store, keys):
        await create_vk_with_budget(store)
        with pytest.raises(NotFoundError):
            await store.update_budgets(
                [TableBudget(id="b-1", current_usage=50.0), TableBudget(id="missing")]
            )
        assert (await store.get_budget("b-1")).current_usage == 0.0

    async def test_delete_budget_detaches_parent(self, store, keys):
        await create_vk_with_budget(store)
        await store.delete_budget("b-1")
        assert (await store.get_virtual_key("vk-1")).virtual_key.budget_id is None


class TestRateLimits:
    async def test_update_rate_limits(self, store, keys):
        await create_vk_with_budget(store)
        await store.update_rate_limits([TableRateLimit(id="rl-vk-1", request_current_usage=9)])
        rate_limit = await store.get_rate_limit("rl-vk-1")
        assert rate_limit.request_current_usage == 9
        assert rate_limit.request_max_limit == 60

    async def test_delete_rate_limit(self, store, keys):
        await create_vk_with_budget(store)
        await store.delete_rate_limit("rl-vk-1")
        assert (await store.get_virtual_key("vk-1")).rate_limit is None

    async def test_orphan_rate_limit_rejected(self, store):
        with pytest.raises(ConflictError):
            await store.create_rate_limit(TableRateLimit(id="rl-x", token_max_limit=1000))

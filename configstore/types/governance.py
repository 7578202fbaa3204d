"""Expanded read views for governance entities.

Views are assembled by explicit queries in the repository. Keys reachable
from a virtual key are exposed only as ``KeyRef`` projections, which never
carry the secret value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from configstore.db.models import (
        TableBudget,
        TableCustomer,
        TableRateLimit,
        TableTeam,
        TableVirtualKey,
    )


@dataclass(frozen=True)
class KeyRef:
    id: int
    key_id: str
    models: list[str] = field(default_factory=list)


@dataclass
class VirtualKeyView:
    virtual_key: TableVirtualKey
    keys: list[KeyRef] = field(default_factory=list)
    team: TableTeam | None = None
    customer: TableCustomer | None = None
    budget: TableBudget | None = None
    rate_limit: TableRateLimit | None = None

    @property
    def key_ids(self) -> list[str]:
        return [ref.key_id for ref in self.keys]


@dataclass
class TeamView:
    team: TableTeam
    customer: TableCustomer | None = None
    budget: TableBudget | None = None


@dataclass
class CustomerView:
    customer: TableCustomer
    teams: list[TableTeam] = field(default_factory=list)
    budget: TableBudget | None = None

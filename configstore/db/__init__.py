"""Persistence layer: tables, backend handle, schema upkeep."""

from configstore.db.base import Base
from configstore.db.repair import RepairReport, repair_keys
from configstore.db.schema import ReconcileReport, reconcile_schema
from configstore.db.session import Database, open_database


async def prepare_database(db: Database) -> tuple[RepairReport, ReconcileReport]:
    """Repair legacy rows, then bring the schema up to date."""
    repair = await repair_keys(db)
    reconcile = await reconcile_schema(db)
    return repair, reconcile


__all__ = [
    "Base",
    "Database",
    "ReconcileReport",
    "RepairReport",
    "open_database",
    "prepare_database",
    "reconcile_schema",
    "repair_keys",
]

"""One-shot repair of legacy provider key rows.

Older databases could hold keys with a null id or value, and duplicate
(key_id, value) pairs. The unique constraint on config_keys cannot be created
while either exists, so this runs before schema reconciliation on every start.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from configstore.db.session import Database
from configstore.exceptions import RepairError

logger = logging.getLogger(__name__)

KEYS_TABLE = "config_keys"

_DELETE_NULL_ROWS = text(
    f"DELETE FROM {KEYS_TABLE} WHERE key_id IS NULL OR value IS NULL"
)

_DELETE_DUPLICATES_SQLITE = text(
    f"""
    DELETE FROM {KEYS_TABLE}
    WHERE id NOT IN (
        SELECT MIN(id) FROM {KEYS_TABLE} GROUP BY key_id, value
    )
    """
)

_DELETE_DUPLICATES_POSTGRES = text(
    f"""
    DELETE FROM {KEYS_TABLE}
    WHERE id IN (
        SELECT id FROM (
            SELECT id, ROW_NUMBER() OVER (
                PARTITION BY key_id, value ORDER BY id
            ) AS rn
            FROM {KEYS_TABLE}
        ) ranked
        WHERE ranked.rn > 1
    )
    """
)


@dataclass
class RepairReport:
    skipped: bool = False
    null_rows_removed: int = 0
    duplicates_removed: int = 0

    @property
    def total_removed(self) -> int:
        return self.null_rows_removed + self.duplicates_removed


async def _keys_table_exists(conn: AsyncConnection) -> bool:
    if conn.dialect.name == "sqlite":
        result = await conn.execute(
            text("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": KEYS_TABLE},
        )
    else:
        result = await conn.execute(
            text(
                "SELECT 1 FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_name = :name"
            ),
            {"name": KEYS_TABLE},
        )
    return result.first() is not None


async def repair_keys(db: Database) -> RepairReport:
    """Remove null and duplicate key rows, keeping the oldest of each pair.

    Idempotent: a clean table is left unchanged.

    Raises:
        RepairError: If any statement fails. Startup must not continue.
    """
    try:
        async with db.engine.begin() as conn:
            if not await _keys_table_exists(conn):
                logger.debug("Table %s does not exist, skipping repair", KEYS_TABLE)
                return RepairReport(skipped=True)

            nulls = await conn.execute(_DELETE_NULL_ROWS)
            if conn.dialect.name == "sqlite":
                dupes = await conn.execute(_DELETE_DUPLICATES_SQLITE)
            else:
                dupes = await conn.execute(_DELETE_DUPLICATES_POSTGRES)

            report = RepairReport(
                null_rows_removed=max(nulls.rowcount or 0, 0),
                duplicates_removed=max(dupes.rowcount or 0, 0),
            )
    except SQLAlchemyError as e:
        raise RepairError(f"Failed to repair {KEYS_TABLE}: {e}") from e

    if report.total_removed:
        logger.info(
            "Repaired %s: removed %d null rows and %d duplicates",
            KEYS_TABLE,
            report.null_rows_removed,
            report.duplicates_removed,
        )
    else:
        logger.debug("No legacy rows to repair in %s", KEYS_TABLE)
    return report

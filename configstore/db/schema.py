"""Schema reconciliation.

Creates missing tables, adds columns that newer releases introduced to
existing tables, and brings older tables up to the current constraints:
named unique constraints are created and columns are tightened to NOT NULL.
Nothing is dropped, so an older process can still read a database a newer
one has touched.

Constraints are applied through alembic batch operations. On SQLite that
recreates the table, which runs with foreign keys off so the copy does not
cascade into referencing tables.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, UniqueConstraint, func, inspect, select, text
from sqlalchemy.engine import Connection

from configstore.db import models  # noqa: F401  (registers tables on Base.metadata)
from configstore.db.base import Base
from configstore.db.session import Database

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    created_tables: list[str] = field(default_factory=list)
    added_columns: list[str] = field(default_factory=list)
    added_constraints: list[str] = field(default_factory=list)
    tightened_columns: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.created_tables
            or self.added_columns
            or self.added_constraints
            or self.tightened_columns
        )


def _flatten(diffs: list[Any]) -> list[tuple]:
    # Column modifications come back grouped in a list per column.
    flat: list[tuple] = []
    for diff in diffs:
        if isinstance(diff, list):
            flat.extend(diff)
        else:
            flat.append(diff)
    return flat


def _has_nulls(connection: Connection, table_name: str, column_name: str) -> bool:
    column = Base.metadata.tables[table_name].c[column_name]
    found = connection.execute(
        select(func.count()).select_from(column.table).where(column.is_(None))
    ).scalar_one()
    return found > 0


def _reconcile(connection: Connection) -> ReconcileReport:
    report = ReconcileReport()

    existing = set(inspect(connection).get_table_names())
    report.created_tables = sorted(set(Base.metadata.tables) - existing)
    Base.metadata.create_all(connection)

    context = MigrationContext.configure(connection)
    ops = Operations(context)
    uniques: dict[str, list[UniqueConstraint]] = {}
    not_null: dict[str, list[tuple[str, Any]]] = {}

    for diff in _flatten(compare_metadata(context, Base.metadata)):
        kind = diff[0]
        if kind == "add_column":
            _, schema, table_name, column = diff
            # Existing rows have no value for the new column.
            new_column = Column(
                column.name,
                column.type,
                nullable=column.nullable or column.server_default is None,
                server_default=column.server_default,
            )
            ops.add_column(table_name, new_column, schema=schema)
            report.added_columns.append(f"{table_name}.{column.name}")
            logger.debug("Added column %s.%s", table_name, column.name)
        elif kind == "add_constraint" and isinstance(diff[1], UniqueConstraint):
            constraint = diff[1]
            if constraint.name is None:
                logger.debug("Skipping unnamed unique constraint on %s", constraint.table.name)
                continue
            uniques.setdefault(constraint.table.name, []).append(constraint)
        elif kind == "modify_nullable":
            _, _, table_name, column_name, existing_info, was_nullable, nullable = diff
            if not was_nullable or nullable:
                continue
            if table_name not in Base.metadata.tables:
                continue
            if _has_nulls(connection, table_name, column_name):
                logger.warning(
                    "Leaving %s.%s nullable: existing rows hold NULL", table_name, column_name
                )
                continue
            not_null.setdefault(table_name, []).append(
                (column_name, existing_info.get("existing_type"))
            )

    for table_name in sorted(set(uniques) | set(not_null)):
        with ops.batch_alter_table(table_name) as batch:
            for column_name, existing_type in not_null.get(table_name, []):
                batch.alter_column(column_name, existing_type=existing_type, nullable=False)
                report.tightened_columns.append(f"{table_name}.{column_name}")
            for constraint in uniques.get(table_name, []):
                columns = [column.name for column in constraint.columns]
                batch.create_unique_constraint(constraint.name, columns)
                report.added_constraints.append(constraint.name)
        logger.debug("Applied constraints to %s", table_name)

    return report


async def reconcile_schema(db: Database) -> ReconcileReport:
    """Ensure every configuration table, column and constraint exists on ``db``."""
    async with db.engine.connect() as conn:
        if db.is_sqlite:
            # Only takes effect outside a transaction.
            await conn.execute(text("PRAGMA foreign_keys=OFF"))
            await conn.commit()
        try:
            report = await conn.run_sync(_reconcile)
            await conn.commit()
        finally:
            if db.is_sqlite:
                await conn.rollback()
                await conn.execute(text("PRAGMA foreign_keys=ON"))
                await conn.commit()

    if report.changed:
        logger.info(
            "Schema reconciled: %d tables created, %d columns added, "
            "%d constraints added, %d columns made NOT NULL",
            len(report.created_tables),
            len(report.added_columns),
            len(report.added_constraints),
            len(report.tightened_columns),
        )
    return report

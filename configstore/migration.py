"""Live migration of the configuration store to another backend.

The orchestrator copies every table from the active backend to the target
with an external bulk transfer tool, verifies the copy, and only then swaps
the store's active backend. Config-mutating calls wait on the store's write
lock for the whole migration; reads keep going against the old backend until
the swap.

States::

    IDLE -> MIGRATION_REQUESTED -> TRANSFERRING -> VERIFYING -> SWAPPED
                                  \\-------------------------> FAILED
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from configstore.config import StoreConfig, StoreSettings, get_settings, save_store_config
from configstore.db import Database, open_database, prepare_database
from configstore.db.base import Base
from configstore.db.models import TableStoreBackend
from configstore.exceptions import ConfigStoreError, MigrationError, ValidationError
from configstore.redaction import merge_store_config
from configstore.store import ConfigStore

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    IDLE = "idle"
    MIGRATION_REQUESTED = "migration_requested"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    SWAPPED = "swapped"
    FAILED = "failed"


@dataclass
class MigrationResult:
    """Outcome of one ``begin_backend_migration`` call."""

    state: MigrationState
    source: str
    destination: str
    transitions: list[MigrationState] = field(default_factory=list)
    error: Optional[MigrationError] = None

    @property
    def succeeded(self) -> bool:
        return self.state in (MigrationState.SWAPPED, MigrationState.IDLE)

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error


class BulkTransfer(Protocol):
    """Copies all tables from one backend to another.

    Implementations raise ``MigrationError`` on failure.
    """

    async def transfer(self, source_uri: str, destination_uri: str) -> None: ...


class PgloaderTransfer:
    """Runs ``pgloader <source> <destination>`` as a subprocess."""

    def __init__(
        self,
        command: str = "pgloader",
        timeout: float = 1800.0,
        extra_args: Sequence[str] = (),
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.extra_args = list(extra_args)

    async def transfer(self, source_uri: str, destination_uri: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.extra_args,
                source_uri,
                destination_uri,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise MigrationError(f"{self.command} not found. Is it installed?") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            raise MigrationError(f"{self.command} timed out after {self.timeout}s")

        if process.returncode != 0:
            raise MigrationError(
                f"{self.command} exited with code {process.returncode}",
                exit_code=process.returncode,
                stderr=stderr.decode("utf-8", errors="replace"),
            )
        logger.debug("%s output: %s", self.command, stdout.decode("utf-8", errors="replace"))


async def _row_counts(db: Database) -> dict[str, int]:
    counts: dict[str, int] = {}
    async with db.engine.connect() as conn:
        for table in Base.metadata.sorted_tables:
            if table.name == TableStoreBackend.__tablename__:
                continue
            counts[table.name] = (await conn.execute(select(func.count()).select_from(table))).scalar_one()
    return counts


class BackendMigrator:
    """Moves a ``ConfigStore`` to a different backend without downtime."""

    def __init__(
        self,
        store: ConfigStore,
        transfer: Optional[BulkTransfer] = None,
        settings: Optional[StoreSettings] = None,
    ) -> None:
        self.store = store
        self.settings = settings or store.settings or get_settings()
        self.transfer = transfer or PgloaderTransfer(
            command=self.settings.transfer_command,
            timeout=self.settings.transfer_timeout,
        )
        self.state = MigrationState.IDLE

    async def begin_backend_migration(self, target: StoreConfig) -> MigrationResult:
        """Switch the store to ``target``.

        A target equal to the active backend is a no-op ending in ``IDLE``.
        On failure the active backend is unchanged and the result carries the
        ``MigrationError``. Cancelling the caller does not interrupt a
        migration that has started.
        """
        if not target.enabled:
            raise ValidationError("Cannot migrate to a disabled config store")
        return await asyncio.shield(self._migrate(target))

    async def _migrate(self, target: StoreConfig) -> MigrationResult:
        async with self.store.write_lock:
            active = self.store.store_config
            target = merge_store_config(target, active)
            result = MigrationResult(
                state=MigrationState.IDLE,
                source=active.describe(),
                destination=target.describe(),
            )

            if target.same_backend(active):
                logger.info("Config store already on %s, nothing to migrate", active.describe())
                self._advance(result, MigrationState.IDLE)
                return result

            self._advance(result, MigrationState.MIGRATION_REQUESTED)
            logger.info("Migrating config store from %s to %s", result.source, result.destination)

            new_db: Optional[Database] = None
            try:
                self._advance(result, MigrationState.TRANSFERRING)
                await self.transfer.transfer(active.to_transfer_uri(), target.to_transfer_uri())

                self._advance(result, MigrationState.VERIFYING)
                new_db = open_database(target, self.settings)
                await prepare_database(new_db)
                await self._verify(self.store.db, new_db)
                await ConfigStore(new_db, self.settings).update_backend_descriptor(target)
            except (ConfigStoreError, SQLAlchemyError, OSError) as e:
                if new_db is not None:
                    await new_db.dispose()
                result.error = (
                    e if isinstance(e, MigrationError) else MigrationError(f"Verification failed: {e}")
                )
                self._advance(result, MigrationState.FAILED)
                logger.error("Config store migration to %s failed: %s", result.destination, result.error)
                return result

            previous = self.store.swap_database(new_db)
            self._advance(result, MigrationState.SWAPPED)

        await previous.dispose()
        if self.settings.config_path:
            save_store_config(self.settings.config_path, target)
        logger.info("Config store now running on %s", result.destination)
        return result

    async def _verify(self, source: Database, destination: Database) -> None:
        """Every table holds as many rows in the destination as in the source."""
        expected = await _row_counts(source)
        actual = await _row_counts(destination)
        mismatched = [
            f"{name} ({expected[name]} != {actual.get(name, 0)})"
            for name in expected
            if expected[name] != actual.get(name, 0)
        ]
        if mismatched:
            raise MigrationError(f"Row counts differ after transfer: {', '.join(mismatched)}")

    def _advance(self, result: MigrationResult, state: MigrationState) -> None:
        self.state = state
        result.state = state
        result.transitions.append(state)
        logger.debug("Backend migration state: %s", state.value)

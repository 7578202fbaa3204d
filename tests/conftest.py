from __future__ import annotations

from pathlib import Path

import pytest

from configstore.config import StoreSettings
from configstore.store import ConfigStore


@pytest.fixture
def settings(tmp_path: Path) -> StoreSettings:
    return StoreSettings(
        config_path=None,
        sqlite_path=str(tmp_path / "config.db"),
        operation_timeout=10.0,
    )


@pytest.fixture
async def store(settings: StoreSettings):
    store = await ConfigStore.open(settings.default_store_config(), settings)
    yield store
    await store.close()

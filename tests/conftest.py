from __future__ import annotations

import types
from pathlib import Path

import pytest

from bookkeeper.cloudsync import (
    InMemoryRemoteStore,
    LocalSyncStore,
    Reconciler,
    SyncConfig,
    SyncCoordinator,
)
from bookkeeper.utils.log_utils import reset_limits

USER_ID = "user-1"


@pytest.fixture(autouse=True)
def _reset_log_limits():
    reset_limits()
    yield
    reset_limits()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(request_timeout=0.5, max_attempts=3, retry_backoff_base=0.0, retry_backoff_max=0.0)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def store(tmp_path: Path) -> LocalSyncStore:
    sync_store = LocalSyncStore(tmp_path / "sync.db")
    yield sync_store
    sync_store.close()


@pytest.fixture
def auth() -> types.SimpleNamespace:
    return types.SimpleNamespace(user_id=USER_ID)


@pytest.fixture
def coordinator(remote, store, auth, config) -> SyncCoordinator:
    return SyncCoordinator(remote, store, auth, config=config)


@pytest.fixture
def reconciler(coordinator) -> Reconciler:
    return Reconciler(coordinator)

from __future__ import annotations

import pytest

from objstore.common import config
from objstore.common.config import (
    BucketConfig,
    BucketProvider,
    LocalProviderConfig,
    MemoryProviderConfig,
)
from objstore.infra.storage import StorageManager
from objstore.infra.storage.manager import get_manager


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep tests away from a developer's .env and cached settings."""
    monkeypatch.setattr(config, "ENV_FILE", tmp_path / ".env.missing")
    config.get_settings.cache_clear()  # type: ignore[attr-defined]
    get_manager.cache_clear()  # type: ignore[attr-defined]
    yield
    config.get_settings.cache_clear()  # type: ignore[attr-defined]
    get_manager.cache_clear()  # type: ignore[attr-defined]


def make_provider(kind: str, root, *, list_page_size: int = 1000) -> BucketProvider:
    if kind == "memory":
        return BucketProvider(memory=MemoryProviderConfig(), list_page_size=list_page_size)
    return BucketProvider(
        local=LocalProviderConfig(root=str(root)), list_page_size=list_page_size
    )


@pytest.fixture(params=["memory", "local"])
def provider_kind(request) -> str:
    return request.param


@pytest.fixture()
def provider(provider_kind, tmp_path) -> BucketProvider:
    return make_provider(provider_kind, tmp_path / "objects", list_page_size=2)


@pytest.fixture()
def manager() -> StorageManager:
    return StorageManager(metrics_enabled=False)


@pytest.fixture()
def bucket(manager, provider):
    return manager.new_bucket(
        provider, BucketConfig(name="assets", cloud_name="assets-bucket")
    )

"""Driver registry and bucket construction."""

from __future__ import annotations

import threading
from functools import lru_cache
from typing import Sequence

from objstore.common.config import BucketConfig, BucketProvider, Settings, get_settings
from objstore.infra.storage.bucket import Bucket
from objstore.infra.storage.errors import StorageError, UnsupportedProviderError
from objstore.infra.storage.providers.base import Driver
from objstore.infra.storage.providers.local import LocalDriver
from objstore.infra.storage.providers.memory import MemoryDriver
from objstore.infra.storage.providers.s3 import S3Driver

# Evaluated in order; the first driver whose predicate matches wins.
DEFAULT_DRIVERS: tuple[type, ...] = (S3Driver, LocalDriver, MemoryDriver)


class UnknownBucketError(StorageError):
    """Raised when a logical bucket name is not declared in the settings."""


class StorageManager:
    """Hands out buckets bound to the driver matching their provider.

    Each driver keeps one client per provider, so every bucket sharing a
    provider declaration shares its client.
    """

    def __init__(
        self,
        drivers: Sequence[Driver] | None = None,
        *,
        settings: Settings | None = None,
        metrics_enabled: bool | None = None,
    ) -> None:
        self._drivers: list[Driver] = (
            list(drivers) if drivers is not None else [cls() for cls in DEFAULT_DRIVERS]
        )
        self._settings = settings
        if metrics_enabled is None:
            metrics_enabled = settings.ENABLE_METRICS if settings is not None else True
        self._metrics_enabled = metrics_enabled
        self._lock = threading.Lock()
        self._provider: BucketProvider | None = None
        self._buckets: dict[str, Bucket] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "StorageManager":
        return cls(settings=settings or get_settings())

    @property
    def drivers(self) -> tuple[Driver, ...]:
        return tuple(self._drivers)

    def driver_for(self, provider: BucketProvider) -> Driver:
        for driver in self._drivers:
            if driver.matches(provider):
                return driver
        raise UnsupportedProviderError(
            f"no storage driver matches provider kind {provider.kind!r}"
        )

    def new_bucket(self, provider: BucketProvider, bucket_cfg: BucketConfig) -> Bucket:
        """Bind ``bucket_cfg`` to the driver for ``provider``.

        Raises:
            UnsupportedProviderError: If no registered driver matches.
            ClientConstructionError: If the provider's client cannot be built.
        """
        driver = self.driver_for(provider)
        impl = driver.new_bucket(provider, bucket_cfg)
        return Bucket(
            impl,
            bucket_cfg,
            provider_name=driver.provider_name,
            metrics_enabled=self._metrics_enabled,
        )

    def get_bucket(self, name: str) -> Bucket:
        """Return the bucket declared as ``name`` in the settings."""
        settings = self._settings or get_settings()
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is not None:
                return bucket
            bucket_cfg = settings.build_buckets().get(name)
            if bucket_cfg is None:
                raise UnknownBucketError(f"bucket {name!r} is not configured")
            if self._provider is None:
                self._provider = settings.build_provider()
            bucket = self.new_bucket(self._provider, bucket_cfg)
            self._buckets[name] = bucket
            return bucket


@lru_cache(maxsize=1)
def get_manager() -> StorageManager:
    return StorageManager.from_settings()

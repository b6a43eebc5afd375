"""Driver contract and the shared per-provider client cache."""

from __future__ import annotations

import logging
import re
import threading
from typing import Generic, Protocol, TypeVar

from objstore.common.config import BucketConfig, BucketProvider
from objstore.infra.storage.errors import ClientConstructionError
from objstore.infra.storage.types import BucketImpl

startup_logger = logging.getLogger("objstore.startup")

ClientT = TypeVar("ClientT")

_GENERATION_RE = re.compile(r"[+-]?[0-9]+")


def parse_generation(version: str) -> int | None:
    """Parse an integer generation token.

    Anything that is not a base-10 integer targets the live version instead of
    failing the operation; callers rely on this leniency.
    """
    if not version or not _GENERATION_RE.fullmatch(version):
        return None
    return int(version)


class Driver(Protocol):
    """A backend a bucket provider can be matched against."""

    provider_name: str

    def matches(self, provider: BucketProvider) -> bool:
        ...

    def new_bucket(self, provider: BucketProvider, bucket_cfg: BucketConfig) -> BucketImpl:
        ...


class ClientCachingDriver(Generic[ClientT]):
    """Base for drivers holding one long-lived client per provider.

    Clients are keyed by provider identity, built lazily on first use and
    never torn down. Construction runs under a lock so concurrent
    ``new_bucket`` calls for the same provider build a single client.
    """

    provider_name = ""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # id(provider) -> (provider, client); holding the provider keeps its id unique.
        self._clients: dict[int, tuple[BucketProvider, ClientT]] = {}

    def matches(self, provider: BucketProvider) -> bool:
        raise NotImplementedError

    def new_bucket(self, provider: BucketProvider, bucket_cfg: BucketConfig) -> BucketImpl:
        client = self.client_for_provider(provider)
        return self._new_bucket(client, provider, bucket_cfg)

    def _new_bucket(
        self, client: ClientT, provider: BucketProvider, bucket_cfg: BucketConfig
    ) -> BucketImpl:
        raise NotImplementedError

    def _build_client(self, provider: BucketProvider) -> ClientT:
        raise NotImplementedError

    def client_for_provider(self, provider: BucketProvider) -> ClientT:
        cached = self._clients.get(id(provider))
        if cached is not None:
            return cached[1]
        with self._lock:
            cached = self._clients.get(id(provider))
            if cached is not None:
                return cached[1]
            try:
                client = self._build_client(provider)
            except Exception as exc:
                startup_logger.error(
                    "failed to create object storage client provider=%s error=%s",
                    self.provider_name,
                    exc,
                )
                raise ClientConstructionError(
                    f"failed to create {self.provider_name} object storage client: {exc}"
                ) from exc
            self._clients[id(provider)] = (provider, client)
            startup_logger.info(
                "created object storage client provider=%s", self.provider_name
            )
            return client

    @property
    def client_count(self) -> int:
        return len(self._clients)

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

SUPPORTED_PROVIDERS: tuple[str, ...] = ("s3", "local", "memory")
DEFAULT_UPLOAD_PART_SIZE = 8 * 1024 * 1024
# S3 rejects multipart parts smaller than 5 MiB except for the last one.
MIN_UPLOAD_PART_SIZE = 5 * 1024 * 1024
DEFAULT_LIST_PAGE_SIZE = 1000


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class S3ProviderConfig:
    """Connection parameters for an S3-compatible provider."""

    endpoint_url: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    use_ssl: bool = True
    addressing_style: str = "auto"
    anonymous: bool = False
    upload_part_size: int = DEFAULT_UPLOAD_PART_SIZE


@dataclass(frozen=True)
class LocalProviderConfig:
    """Filesystem provider rooted at ``root``."""

    root: str


@dataclass(frozen=True)
class MemoryProviderConfig:
    """In-process provider; objects vanish with the process."""


@dataclass(eq=False)
class BucketProvider:
    """Which physical provider a bucket uses.

    Exactly one of the sub-configurations is set. Providers compare and hash by
    identity: each declared provider gets its own client even when two
    declarations carry identical values.
    """

    s3: S3ProviderConfig | None = None
    local: LocalProviderConfig | None = None
    memory: MemoryProviderConfig | None = None
    list_page_size: int = DEFAULT_LIST_PAGE_SIZE

    def __post_init__(self) -> None:
        configured = [
            name
            for name in ("s3", "local", "memory")
            if getattr(self, name) is not None
        ]
        if len(configured) != 1:
            raise ValueError(
                "BucketProvider requires exactly one of s3, local or memory "
                f"(got {', '.join(configured) or 'none'})"
            )
        if self.list_page_size <= 0:
            raise ValueError("list_page_size must be positive")

    @property
    def kind(self) -> str:
        if self.s3 is not None:
            return "s3"
        if self.local is not None:
            return "local"
        return "memory"


@dataclass(frozen=True)
class BucketConfig:
    """A logical bucket and the physical bucket behind it."""

    name: str
    cloud_name: str

    def __post_init__(self) -> None:
        if not self.name or not self.cloud_name:
            raise ValueError("BucketConfig requires name and cloud_name")


def _parse_buckets(entries: list[str]) -> dict[str, str]:
    buckets: dict[str, str] = {}
    for entry in entries:
        if "=" in entry:
            name, cloud_name = entry.split("=", 1)
        else:
            name, cloud_name = entry, entry
        name, cloud_name = name.strip(), cloud_name.strip()
        if not name or not cloud_name:
            raise ValueError(f"Invalid STORAGE_BUCKETS entry: {entry!r}")
        buckets[name] = cloud_name
    return buckets


@dataclass
class Settings:
    STORAGE_PROVIDER: str = "s3"
    STORAGE_BUCKETS: list[str] = field(default_factory=list)
    STORAGE_UPLOAD_PART_SIZE: int = DEFAULT_UPLOAD_PART_SIZE
    STORAGE_LIST_PAGE_SIZE: int = DEFAULT_LIST_PAGE_SIZE
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "auto"
    S3_ANONYMOUS: bool = False
    LOCAL_STORAGE_ROOT: str = "./data/objects"
    ENABLE_METRICS: bool = True

    def __post_init__(self) -> None:
        self.STORAGE_PROVIDER = (self.STORAGE_PROVIDER or "").strip().lower()
        if self.STORAGE_PROVIDER not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported STORAGE_PROVIDER: {self.STORAGE_PROVIDER!r}. "
                f"Expected one of {', '.join(SUPPORTED_PROVIDERS)}."
            )
        if self.STORAGE_UPLOAD_PART_SIZE < MIN_UPLOAD_PART_SIZE:
            raise ValueError(
                f"STORAGE_UPLOAD_PART_SIZE must be at least {MIN_UPLOAD_PART_SIZE} bytes."
            )
        if self.STORAGE_LIST_PAGE_SIZE <= 0:
            raise ValueError("STORAGE_LIST_PAGE_SIZE must be positive.")
        _parse_buckets(self.STORAGE_BUCKETS)

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            STORAGE_PROVIDER=os.environ.get("STORAGE_PROVIDER", cls.STORAGE_PROVIDER),
            STORAGE_BUCKETS=_as_list(os.environ.get("STORAGE_BUCKETS")),
            STORAGE_UPLOAD_PART_SIZE=int(
                os.environ.get("STORAGE_UPLOAD_PART_SIZE", cls.STORAGE_UPLOAD_PART_SIZE)
            ),
            STORAGE_LIST_PAGE_SIZE=int(
                os.environ.get("STORAGE_LIST_PAGE_SIZE", cls.STORAGE_LIST_PAGE_SIZE)
            ),
            S3_ENDPOINT_URL=os.environ.get("S3_ENDPOINT_URL") or None,
            S3_REGION=os.environ.get("S3_REGION") or None,
            S3_ACCESS_KEY_ID=os.environ.get("S3_ACCESS_KEY_ID") or None,
            S3_SECRET_ACCESS_KEY=os.environ.get("S3_SECRET_ACCESS_KEY") or None,
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_ANONYMOUS=_as_bool(os.environ.get("S3_ANONYMOUS"), cls.S3_ANONYMOUS),
            LOCAL_STORAGE_ROOT=os.environ.get(
                "LOCAL_STORAGE_ROOT", cls.LOCAL_STORAGE_ROOT
            ),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
        )

    def build_provider(self) -> BucketProvider:
        if self.STORAGE_PROVIDER == "s3":
            return BucketProvider(
                s3=S3ProviderConfig(
                    endpoint_url=self.S3_ENDPOINT_URL,
                    region=self.S3_REGION,
                    access_key_id=self.S3_ACCESS_KEY_ID,
                    secret_access_key=self.S3_SECRET_ACCESS_KEY,
                    use_ssl=self.S3_USE_SSL,
                    addressing_style=(self.S3_ADDRESSING_STYLE or "auto").strip().lower(),
                    anonymous=self.S3_ANONYMOUS,
                    upload_part_size=self.STORAGE_UPLOAD_PART_SIZE,
                ),
                list_page_size=self.STORAGE_LIST_PAGE_SIZE,
            )
        if self.STORAGE_PROVIDER == "local":
            return BucketProvider(
                local=LocalProviderConfig(root=self.LOCAL_STORAGE_ROOT),
                list_page_size=self.STORAGE_LIST_PAGE_SIZE,
            )
        return BucketProvider(
            memory=MemoryProviderConfig(),
            list_page_size=self.STORAGE_LIST_PAGE_SIZE,
        )

    def build_buckets(self) -> dict[str, BucketConfig]:
        return {
            name: BucketConfig(name=name, cloud_name=cloud_name)
            for name, cloud_name in _parse_buckets(self.STORAGE_BUCKETS).items()
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()

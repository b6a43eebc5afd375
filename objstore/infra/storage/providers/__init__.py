"""Storage drivers: S3-compatible, local filesystem, and in-memory."""

from .base import ClientCachingDriver, Driver, parse_generation
from .local import LocalDriver
from .memory import MemoryDriver
from .s3 import S3Driver

__all__ = [
    "ClientCachingDriver",
    "Driver",
    "LocalDriver",
    "MemoryDriver",
    "S3Driver",
    "parse_generation",
]

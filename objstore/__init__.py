"""Pluggable object storage for named logical buckets."""

__version__ = "0.1.0"

"""Remote store adapters."""

from .http_remote_store import HttpRemoteStore, parse_retry_after

__all__ = ["HttpRemoteStore", "parse_retry_after"]

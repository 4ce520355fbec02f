"""Shared utilities for the backend."""
from utils.case import dict_keys_to_camel, to_camel_key
from utils.dates import add_months, isoformat_or_none, utcnow
from utils.locks import KeyedLock

__all__ = [
    "to_camel_key",
    "dict_keys_to_camel",
    "add_months",
    "isoformat_or_none",
    "utcnow",
    "KeyedLock",
]

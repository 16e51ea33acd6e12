"""
Store adapters for Taskflow.

The replica core talks to the authoritative store only through the
RemoteStore and ChangeFeed contracts defined here.
"""

from taskflow.repos.memory_store import MemoryStore
from taskflow.repos.store import ALL_EVENTS, ChangeFeed, FeedSubscription, RemoteStore

__all__ = [
    "ALL_EVENTS",
    "ChangeFeed",
    "FeedSubscription",
    "RemoteStore",
    "MemoryStore",
]

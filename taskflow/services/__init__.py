"""Replica services: join resolver, loaders, subscriber, managers, facade."""

from taskflow.services.change_feed import ChangeEventSubscriber, SubscriptionHandle
from taskflow.services.data_facade import DataFacade
from taskflow.services.join_resolver import JoinResolver
from taskflow.services.replica_manager import MessageReplica, PersonReplica, ReplicaManager, TaskReplica
from taskflow.services.snapshot_loader import (
    MessageSnapshotLoader,
    PersonSnapshotLoader,
    SnapshotLoader,
    TaskSnapshotLoader,
)

__all__ = [
    "ChangeEventSubscriber",
    "SubscriptionHandle",
    "DataFacade",
    "JoinResolver",
    "ReplicaManager",
    "TaskReplica",
    "MessageReplica",
    "PersonReplica",
    "SnapshotLoader",
    "TaskSnapshotLoader",
    "MessageSnapshotLoader",
    "PersonSnapshotLoader",
]

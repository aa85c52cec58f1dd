"""Cluster API access: client, readiness waiter and helpers."""

from .kinds import ResourceKind
from .client import ClusterClient
from .wait import Backoff, wait_until

__all__ = ['ResourceKind', 'ClusterClient', 'Backoff', 'wait_until']

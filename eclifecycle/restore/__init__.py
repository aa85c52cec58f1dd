"""Disaster-recovery restore: persisted state, backup validation, component restores and orchestration."""

from .state import RestoreState, StateStore
from .backups import ReplicatedBackup, BackupFacts
from .compatibility import is_backup_restorable, is_replicated_backup_restorable
from .orchestrator import RestoreOrchestrator

__all__ = [
    'RestoreState', 'StateStore', 'ReplicatedBackup', 'BackupFacts',
    'is_backup_restorable', 'is_replicated_backup_restorable', 'RestoreOrchestrator',
]

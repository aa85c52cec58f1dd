"""Cluster upgrades: release metadata, autopilot plans, chart reconciliation and airgap artifacts."""

from .release import ReleaseMetadata, ReleaseMetadataProvider
from .orchestrator import UpgradeOrchestrator

__all__ = ['ReleaseMetadata', 'ReleaseMetadataProvider', 'UpgradeOrchestrator']

"""SQLAlchemy model package for the release ledger."""

from shipyard.models.backup_snapshot import BackupSnapshot
from shipyard.models.deployment import Deployment
from shipyard.models.deployment_event import DeploymentEvent
from shipyard.models.release import Release

__all__ = [
    "BackupSnapshot",
    "Deployment",
    "DeploymentEvent",
    "Release",
]

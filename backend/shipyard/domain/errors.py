from __future__ import annotations

from shipyard.domain.release_state_machine import FailureReasonCode


class DeploymentError(RuntimeError):
    reason: FailureReasonCode = FailureReasonCode.UNKNOWN_ERROR

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        message = self.reason.value if not detail else f"{self.reason.value}:{detail}"
        super().__init__(message)


class PreflightMissingTool(DeploymentError):
    reason = FailureReasonCode.PREFLIGHT_MISSING_TOOL


class MissingSharedConfig(DeploymentError):
    reason = FailureReasonCode.MISSING_SHARED_CONFIG


class ReleaseIdCollision(DeploymentError):
    reason = FailureReasonCode.RELEASE_ID_COLLISION


class SourceSyncFailure(DeploymentError):
    reason = FailureReasonCode.SOURCE_SYNC_FAILED


class BuildFailure(DeploymentError):
    reason = FailureReasonCode.BUILD_FAILED


class MigrationFailure(DeploymentError):
    reason = FailureReasonCode.MIGRATION_FAILED


class SelfCheckFailure(DeploymentError):
    reason = FailureReasonCode.SELF_CHECK_FAILED


class ProbeExhausted(DeploymentError):
    reason = FailureReasonCode.PROBE_EXHAUSTED


class SwitchFailure(DeploymentError):
    reason = FailureReasonCode.SWITCH_FAILED


class RollbackRestoreFailure(DeploymentError):
    reason = FailureReasonCode.ROLLBACK_RESTORE_FAILED


class DeploymentLocked(DeploymentError):
    reason = FailureReasonCode.DEPLOY_LOCKED

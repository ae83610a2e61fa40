from __future__ import annotations

from enum import Enum


class ReleaseState(str, Enum):
    STAGED = "staged"
    BUILT = "built"
    MIGRATED = "migrated"
    HEALTH_CHECKED = "health_checked"
    LIVE = "live"
    RETIRED = "retired"
    FAILED = "failed"
    ROLLED_BACK_TARGET = "rolled_back_target"


class DeployMode(str, Enum):
    RELEASE = "release"
    INPLACE = "inplace"


class MigrationPolicy(str, Enum):
    BEFORE_SWITCH = "before_switch"
    AFTER_SWITCH = "after_switch"

    @classmethod
    def parse(cls, value: str) -> "MigrationPolicy":
        normalized = (value or "").strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"invalid_migration_policy:{value}") from exc


class FailureReasonCode(str, Enum):
    PREFLIGHT_MISSING_TOOL = "PREFLIGHT_MISSING_TOOL"
    MISSING_SHARED_CONFIG = "MISSING_SHARED_CONFIG"
    RELEASE_ID_COLLISION = "RELEASE_ID_COLLISION"
    SOURCE_SYNC_FAILED = "SOURCE_SYNC_FAILED"
    BUILD_FAILED = "BUILD_FAILED"
    MIGRATION_FAILED = "MIGRATION_FAILED"
    SELF_CHECK_FAILED = "SELF_CHECK_FAILED"
    PROBE_EXHAUSTED = "PROBE_EXHAUSTED"
    SWITCH_FAILED = "SWITCH_FAILED"
    ROLLBACK_RESTORE_FAILED = "ROLLBACK_RESTORE_FAILED"
    DEPLOY_LOCKED = "DEPLOY_LOCKED"
    OPERATOR_ABORT = "OPERATOR_ABORT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


TERMINAL_STATES = {
    ReleaseState.FAILED,
}

VALID_TRANSITIONS: dict[ReleaseState, set[ReleaseState]] = {
    ReleaseState.STAGED: {ReleaseState.BUILT, ReleaseState.FAILED},
    ReleaseState.BUILT: {ReleaseState.MIGRATED, ReleaseState.HEALTH_CHECKED, ReleaseState.FAILED},
    ReleaseState.MIGRATED: {ReleaseState.HEALTH_CHECKED, ReleaseState.FAILED},
    ReleaseState.HEALTH_CHECKED: {ReleaseState.LIVE, ReleaseState.FAILED},
    ReleaseState.LIVE: {ReleaseState.RETIRED, ReleaseState.FAILED},
    ReleaseState.RETIRED: {ReleaseState.ROLLED_BACK_TARGET},
    ReleaseState.ROLLED_BACK_TARGET: {ReleaseState.LIVE},
    ReleaseState.FAILED: set(),
}


class TransitionRuleError(ValueError):
    """Raised when an invalid release state transition is requested."""


def ensure_transition_allowed(
    current: ReleaseState,
    target: ReleaseState,
    failure_reason: FailureReasonCode | None = None,
) -> None:
    if current in TERMINAL_STATES:
        raise TransitionRuleError(f"Cannot transition terminal state '{current.value}'.")

    allowed_targets = VALID_TRANSITIONS[current]
    if target not in allowed_targets:
        allowed_text = ", ".join(sorted(state.value for state in allowed_targets))
        raise TransitionRuleError(
            f"Invalid transition '{current.value}' -> '{target.value}'. Allowed: [{allowed_text}]"
        )

    if target == ReleaseState.FAILED and failure_reason is None:
        raise TransitionRuleError("failure_reason_code is required when transitioning to failed.")

    if target != ReleaseState.FAILED and failure_reason is not None:
        raise TransitionRuleError("failure_reason_code is only valid for failed transitions.")


def list_release_states() -> list[str]:
    return [state.value for state in ReleaseState]

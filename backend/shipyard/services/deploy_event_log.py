from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from shipyard.models import DeploymentEvent

EVENT_SCHEMA_VERSION = 1


def normalize_event_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    value = dict(payload or {})
    schema_version = value.get("schema_version")
    if not isinstance(schema_version, int) or schema_version <= 0:
        value["schema_version"] = EVENT_SCHEMA_VERSION
    return value


def append_deployment_event(
    db: Session,
    *,
    deployment_id: str,
    event_type: str,
    status_from: str | None = None,
    status_to: str | None = None,
    payload: dict[str, Any] | None = None,
) -> DeploymentEvent:
    row = DeploymentEvent(
        deployment_id=deployment_id,
        event_type=event_type,
        status_from=status_from,
        status_to=status_to,
        payload=normalize_event_payload(payload),
    )
    db.add(row)
    return row


def list_deployment_events(db: Session, *, deployment_id: str) -> list[DeploymentEvent]:
    return (
        db.query(DeploymentEvent)
        .filter(DeploymentEvent.deployment_id == deployment_id)
        .order_by(DeploymentEvent.id.asc())
        .all()
    )

from __future__ import annotations

from datetime import datetime, timezone
import uuid

# Release ids are UTC timestamps; lexical order is chronological order.
RELEASE_ID_FORMAT = "%Y%m%d%H%M%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_release_id(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(RELEASE_ID_FORMAT)


def deployment_uuid() -> str:
    return str(uuid.uuid4())

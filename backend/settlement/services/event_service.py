# Overview: Service-layer operations for the domain event outbox.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import DomainEvent
from settlement.time_utils import utcnow
"""
Domain Event Outbox Invariants (authoritative)

- Append-only; no updates/deletes of existing events.
- No domain/business logic in the outbox itself.
- Events are written inside the same DB transaction as the change they record,
  so a rolled-back transition never produces an event.
- Consumers read by ascending id with a cursor (after_id).
"""


def append_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    payload: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> DomainEvent:
    """Append an outbox event. Does not commit."""
    ev = DomainEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_events(
    *,
    after_id: int = 0,
    limit: int = 100,
    event_types: list[str] | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
) -> list[DomainEvent]:
    q = db.session.query(DomainEvent).filter(DomainEvent.id > after_id)
    if event_types:
        q = q.filter(DomainEvent.event_type.in_(event_types))
    if entity_type is not None:
        q = q.filter(DomainEvent.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(DomainEvent.entity_id == entity_id)
    return q.order_by(DomainEvent.id.asc()).limit(min(max(limit, 1), 500)).all()


def latest_event_id() -> int:
    return int(db.session.query(db.func.coalesce(db.func.max(DomainEvent.id), 0)).scalar() or 0)

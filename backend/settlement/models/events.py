from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class DomainEvent(db.Model):
    """
    Append-only outbox of state changes consumed by notification and
    dashboard collaborators. Rows are written in the same transaction as the
    change they describe; id order is delivery order.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload or {},
            "occurred_at": to_utc_z(self.occurred_at),
        }

# Overview: Flask API routes for the domain event feed; cursor-based reads for dashboards and notifiers.

from flask import Blueprint, request, jsonify

from ..services import event_service
from ..validation import ValidationError, require_int


events_bp = Blueprint("events", __name__, url_prefix="/api/events")


@events_bp.get("")
def list_events_route():
    """
    Query params:
    - after_id: cursor, events with a greater id are returned (default 0)
    - limit: 1..500 (default 100)
    - types: comma separated event types
    - entity_type / entity_id: narrow to one entity

    Clients store next_after_id and send it back on the next poll.
    """
    try:
        after_id = require_int(request.args.get("after_id", "0"), "after_id", minimum=0)
        limit = require_int(request.args.get("limit", "100"), "limit", minimum=1, maximum=500)
        types = [t.strip() for t in request.args.get("types", "").split(",") if t.strip()]
        entity_id = request.args.get("entity_id")
        events = event_service.list_events(
            after_id=after_id,
            limit=limit,
            event_types=types or None,
            entity_type=request.args.get("entity_type"),
            entity_id=require_int(entity_id, "entity_id") if entity_id is not None else None,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({
        "events": [ev.to_dict() for ev in events],
        "next_after_id": events[-1].id if events else after_id,
    }), 200

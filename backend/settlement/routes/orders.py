# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/settlement/routes/orders.py
"""
Order API

Buyers poll GET /<id>/status every 30-60 seconds. Transitions are POSTs named
after the action; an action the current status does not allow answers 409
and leaves the order untouched.
"""

from flask import Blueprint, request, jsonify, current_app

from ..models import OrderStatus
from ..services import order_service, reconciliation_service
from ..services.order_service import OrderError, OrderNotFound, IllegalTransition, StaleStateError
from ..validation import ValidationError, optional_text, require_choice, require_int, require_object, require_text


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _transition_error(e: OrderError):
    if isinstance(e, OrderNotFound):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, IllegalTransition):
        return jsonify({"error": str(e), "from_status": e.from_status, "to_status": e.to_status}), 409
    if isinstance(e, StaleStateError):
        return jsonify({"error": str(e), "retryable": True}), 409
    return jsonify({"error": str(e)}), 400


# =============================================================================
# QUERIES
# =============================================================================

@orders_bp.get("")
def list_orders_route():
    """
    Query params: buyer_id | seller_id (one required), status, limit, offset
    """
    try:
        buyer_id = request.args.get("buyer_id")
        seller_id = request.args.get("seller_id")
        if buyer_id is None and seller_id is None:
            return jsonify({"error": "buyer_id or seller_id is required"}), 400
        status = request.args.get("status")
        if status is not None:
            require_choice(status, "status", OrderStatus)

        orders = order_service.list_orders(
            buyer_id=require_int(buyer_id, "buyer_id") if buyer_id is not None else None,
            seller_id=require_int(seller_id, "seller_id") if seller_id is not None else None,
            status=status,
            limit=require_int(request.args.get("limit", "50"), "limit", minimum=1),
            offset=require_int(request.args.get("offset", "0"), "offset", minimum=0),
        )
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/stats")
def order_stats_route():
    try:
        buyer_id = request.args.get("buyer_id")
        seller_id = request.args.get("seller_id")
        stats = order_service.order_stats(
            buyer_id=require_int(buyer_id, "buyer_id") if buyer_id is not None else None,
            seller_id=require_int(seller_id, "seller_id") if seller_id is not None else None,
        )
        return jsonify(stats), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute order stats")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order(order_id).to_dict()}), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404


@orders_bp.get("/<int:order_id>/status")
def get_order_status_route(order_id: int):
    """
    Polling view. ?refresh=1 pulls the provider first when the payment is
    still in flight.
    """
    try:
        if request.args.get("refresh", "0").lower() in ("1", "true"):
            view = reconciliation_service.reconcile_order(order_id)
        else:
            view = order_service.get_order_status(order_id)
        return jsonify(view), 200

    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to load order status")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSITIONS
# =============================================================================

@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    """Buyer cancel; only while pending or confirmed."""
    try:
        data = request.get_json(silent=True) or {}
        reason = optional_text(data.get("reason"), "reason", max_length=64) or "buyer_canceled"
        order = order_service.cancel_order(order_id, reason=reason)
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderError as e:
        return _transition_error(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/processing")
def start_processing_route(order_id: int):
    try:
        order = order_service.start_processing(order_id)
        return jsonify({"order": order.to_dict()}), 200

    except OrderError as e:
        return _transition_error(e)
    except Exception:
        current_app.logger.exception("Failed to start processing order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/ship")
def ship_order_route(order_id: int):
    """
    Request body:
    {"tracking_number": "1Z999...", "carrier": "DHL"}
    """
    try:
        data = require_object(request.get_json(silent=True))
        order = order_service.ship_order(
            order_id,
            tracking_number=require_text(data.get("tracking_number"), "tracking_number", max_length=128),
            carrier=optional_text(data.get("carrier"), "carrier", max_length=64),
        )
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderError as e:
        return _transition_error(e)
    except Exception:
        current_app.logger.exception("Failed to ship order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/deliver")
def mark_delivered_route(order_id: int):
    """
    Request body (optional):
    {"source": "buyer" | "carrier"}
    """
    try:
        data = request.get_json(silent=True) or {}
        source = data.get("source", "buyer")
        if source not in ("buyer", "carrier"):
            return jsonify({"error": "source must be one of: buyer, carrier"}), 400
        order = order_service.mark_delivered(order_id, source=source)
        return jsonify({"order": order.to_dict()}), 200

    except OrderError as e:
        return _transition_error(e)
    except Exception:
        current_app.logger.exception("Failed to mark order delivered")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/return")
def approve_return_route(order_id: int):
    """
    Approve a buyer's return request. Refunds the payment and debits the seller.

    Request body:
    {"reason": "item damaged"}
    """
    try:
        data = require_object(request.get_json(silent=True))
        order = order_service.approve_return(
            order_id,
            reason=require_text(data.get("reason"), "reason"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderError as e:
        return _transition_error(e)
    except Exception:
        current_app.logger.exception("Failed to approve return")
        return jsonify({"error": "Internal server error"}), 500

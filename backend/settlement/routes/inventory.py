# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

# backend/settlement/routes/inventory.py
"""
Inventory API

GET endpoints are display reads. They never gate a reservation; checkout's
conditional update is the only availability check.
"""

from flask import Blueprint, request, jsonify, current_app

from ..models import ListingStatus
from ..services import inventory_service
from ..services.inventory_service import InventoryError, StockUnitNotFound, ReservationNotFound
from ..validation import ValidationError, optional_text, require_choice, require_int, require_object, require_text


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/stock-units")
def create_stock_unit_route():
    """
    Request body:
    {"listing_id": "lst_123", "seller_id": 4, "variant": "XL", "quantity_on_hand": 10}
    """
    try:
        data = require_object(request.get_json(silent=True))
        listing_status = data.get("listing_status", ListingStatus.APPROVED.value)
        unit = inventory_service.create_stock_unit(
            listing_id=require_text(data.get("listing_id"), "listing_id", max_length=64),
            seller_id=require_int(data.get("seller_id"), "seller_id", minimum=1),
            variant=optional_text(data.get("variant"), "variant", max_length=64),
            quantity_on_hand=require_int(data.get("quantity_on_hand", 0), "quantity_on_hand", minimum=0),
            listing_status=require_choice(listing_status, "listing_status", ListingStatus),
        )
        return jsonify({"stock_unit": unit.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except InventoryError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create stock unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:stock_unit_id>")
def get_inventory_route(stock_unit_id: int):
    try:
        return jsonify(inventory_service.get_inventory(stock_unit_id)), 200
    except StockUnitNotFound as e:
        return jsonify({"error": str(e)}), 404


@inventory_bp.post("/<int:stock_unit_id>/restock")
def restock_route(stock_unit_id: int):
    """
    Request body:
    {"quantity": 5}
    """
    try:
        data = require_object(request.get_json(silent=True))
        quantity = require_int(data.get("quantity"), "quantity", minimum=1)
        inventory_service.restock(stock_unit_id, quantity)
        return jsonify(inventory_service.get_inventory(stock_unit_id)), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except StockUnitNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InventoryError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to restock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:stock_unit_id>/listing-status")
def set_listing_status_route(stock_unit_id: int):
    """
    Moderation: draft -> pending_review -> approved | rejected, rejected -> pending_review,
    approved -> archived.

    Request body:
    {"status": "approved"}
    """
    try:
        data = require_object(request.get_json(silent=True))
        new_status = require_choice(data.get("status"), "status", ListingStatus)
        unit = inventory_service.set_listing_status(stock_unit_id, new_status)
        return jsonify({"stock_unit": unit.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except StockUnitNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InventoryError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to change listing status")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/reservations/<int:reservation_id>/release")
def release_reservation_route(reservation_id: int):
    try:
        reservation = inventory_service.release_cart_hold(reservation_id)
        return jsonify({"reservation": reservation.to_dict()}), 200

    except ReservationNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InventoryError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to release reservation")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/reservations/stats")
def reservation_stats_route():
    return jsonify(inventory_service.get_reservation_stats()), 200

# Overview: Flask API routes for checkout; parses input and returns JSON responses.

# backend/settlement/routes/checkout.py
"""
Checkout API

One call reserves stock for every line, creates the order and hands the
payment to the provider. Clients retry with the same idempotency_key after a
network failure and get the original result back.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import checkout_service
from ..services.inventory_service import OutOfStock, StockUnitNotFound, ListingNotPurchasable
from ..services.order_service import CheckoutError
from ..services.payment_service import PaymentError, PaymentFailed, ActiveIntentExists
from ..validation import OrderDraft, ValidationError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("")
def checkout_route():
    """
    Request body:
    {
        "buyer_id": 7,
        "currency": "NGN",
        "payment_method": "card",
        "idempotency_key": "7f1c...",
        "lines": [{"stock_unit_id": 1, "quantity": 2, "unit_price_minor_units": 150000}]
    }

    Returns:
        201: {order_id, payment_intent_id, redirect_url, status, reservation_expires_at}
        400: invalid input
        402: payment provider handoff failed (order canceled, holds released)
        404: stock unit not found
        409: out of stock / listing not purchasable
    """
    try:
        draft = OrderDraft.from_payload(request.get_json(silent=True))
        result = checkout_service.checkout(draft)
        return jsonify(result), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OutOfStock as e:
        return jsonify({
            "error": str(e),
            "code": "out_of_stock",
            "stock_unit_id": e.stock_unit_id,
            "available": e.available,
            "retryable": True,
        }), 409
    except ListingNotPurchasable as e:
        return jsonify({"error": str(e), "code": "listing_not_purchasable"}), 409
    except StockUnitNotFound as e:
        return jsonify({"error": str(e)}), 404
    except PaymentFailed as e:
        return jsonify({"error": str(e), "code": "payment_failed", "retryable": True}), 402
    except ActiveIntentExists as e:
        return jsonify({"error": str(e), "payment_intent_id": e.intent_id}), 409
    except (CheckoutError, PaymentError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to check out")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/settlement/routes/payments.py
"""
Payment Intent API

DESIGN:
- Intents are normally created by checkout; POST /intents retries the
  handoff for a pending order with the caller's idempotency key.
- /return is hit when the buyer's browser comes back from the provider.
- /confirm is for providers with no webhook channel.
"""

from flask import Blueprint, request, jsonify, current_app

from ..models import PaymentMethod
from ..services import payment_service
from ..services.order_service import OrderNotFound
from ..services.payment_gateway import PaymentGatewayError
from ..services.payment_service import PaymentError, PaymentFailed, PaymentIntentNotFound, ActiveIntentExists
from ..validation import (
    ValidationError,
    optional_text,
    require_choice,
    require_currency,
    require_int,
    require_object,
    require_text,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/intents")
def create_intent_route():
    """
    Request body:
    {
        "order_id": 12,
        "amount_minor_units": 300000,
        "currency": "NGN",
        "method": "card",
        "idempotency_key": "..."
    }
    """
    try:
        data = require_object(request.get_json(silent=True))
        intent = payment_service.create_intent(
            require_int(data.get("order_id"), "order_id", minimum=1),
            require_int(data.get("amount_minor_units"), "amount_minor_units", minimum=1),
            require_currency(data.get("currency")),
            require_choice(data.get("method"), "method", PaymentMethod),
            require_text(data.get("idempotency_key"), "idempotency_key", max_length=128),
        )
        return jsonify({"payment_intent": intent.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ActiveIntentExists as e:
        return jsonify({"error": str(e), "payment_intent_id": e.intent_id}), 409
    except PaymentFailed as e:
        return jsonify({"error": str(e), "retryable": True}), 402
    except PaymentError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/intents/<int:intent_id>")
def get_intent_route(intent_id: int):
    try:
        return jsonify(payment_service.get_intent_status(intent_id)), 200
    except PaymentIntentNotFound as e:
        return jsonify({"error": str(e)}), 404


@payments_bp.post("/intents/<int:intent_id>/return")
def returned_from_provider_route(intent_id: int):
    """Buyer is back from the provider redirect."""
    try:
        payment_service.mark_returned_from_provider(intent_id)
        return jsonify(payment_service.get_intent_status(intent_id)), 200

    except PaymentIntentNotFound as e:
        return jsonify({"error": str(e)}), 404
    except PaymentError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record provider return")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/intents/<int:intent_id>/confirm")
def confirm_manually_route(intent_id: int):
    """
    Request body:
    {"transaction_id": "txn_123", "verification_code": "optional"}
    """
    try:
        data = require_object(request.get_json(silent=True))
        intent = payment_service.confirm_manually(
            intent_id,
            require_text(data.get("transaction_id"), "transaction_id", max_length=128),
            optional_text(data.get("verification_code"), "verification_code", max_length=64),
        )
        return jsonify({"payment_intent": intent.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PaymentIntentNotFound as e:
        return jsonify({"error": str(e)}), 404
    except PaymentFailed as e:
        return jsonify({"error": str(e), "retryable": True}), 402
    except PaymentGatewayError as e:
        return jsonify({"error": str(e)}), 502
    except PaymentError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for provider webhooks; verifies signatures and records events.

# backend/settlement/routes/webhooks.py
"""
Payment Provider Webhooks

CONTRACT:
- 200 only after the event is durably recorded as processed (or ignored)
- 401 on a bad signature; the provider must not retry
- 400 on a malformed body
- 404 when the reference is unknown yet, 500 on processing failure; both
  leave the stored event 'failed' and the provider retries
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_service
from ..services.payment_service import InvalidSignature, PaymentIntentNotFound
from ..validation import ValidationError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "X-Payment-Signature"


@webhooks_bp.post("/payments")
def payment_webhook_route():
    raw_body = request.get_data(cache=False)
    try:
        record = payment_service.apply_provider_event(raw_body, request.headers.get(SIGNATURE_HEADER))
        return jsonify({"received": True, "event_id": record.provider_event_id, "status": record.status}), 200

    except InvalidSignature as e:
        return jsonify({"error": str(e)}), 401
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PaymentIntentNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500

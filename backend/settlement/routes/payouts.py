# Overview: Flask API routes for payout methods and seller balances; parses input and returns JSON responses.

# backend/settlement/routes/payouts.py
"""
Payout API

Verification codes:
- POST /methods/<id>/send-code   429 with retry_after_seconds inside the resend cooldown
- POST /methods/<id>/verify      200 (also when already verified), 400 mismatch,
                                 410 expired
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payout_service
from ..services.notification_service import NotificationError
from ..services.payout_service import (
    AlreadyVerified,
    CooldownActive,
    Expired,
    Mismatch,
    NoCodeIssued,
    PayoutError,
    PayoutMethodNotFound,
    TooManyAttempts,
)
from ..validation import PayoutMethodDraft, ValidationError, require_int, require_object, require_text


payouts_bp = Blueprint("payouts", __name__, url_prefix="/api/payouts")


# =============================================================================
# METHODS
# =============================================================================

@payouts_bp.post("/methods")
def create_payout_method_route():
    """
    Request body:
    {
        "seller_id": 4,
        "method_type": "bank",
        "account_details": {"bank_name": "...", "account_number": "...", "account_name": "..."},
        "contact_email": "seller@example.com"
    }
    """
    try:
        draft = PayoutMethodDraft.from_payload(request.get_json(silent=True))
        method = payout_service.create_payout_method(draft)
        return jsonify({"payout_method": method.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PayoutError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create payout method")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.get("/methods")
def list_payout_methods_route():
    try:
        seller_id = require_int(request.args.get("seller_id"), "seller_id", minimum=1)
        methods = payout_service.list_payout_methods(seller_id)
        return jsonify({"payout_methods": [m.to_dict() for m in methods]}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@payouts_bp.post("/methods/<int:method_id>/default")
def set_default_route(method_id: int):
    try:
        method = payout_service.set_default_payout_method(method_id)
        return jsonify({"payout_method": method.to_dict()}), 200

    except PayoutMethodNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to set default payout method")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.delete("/methods/<int:method_id>")
def delete_payout_method_route(method_id: int):
    try:
        return jsonify(payout_service.delete_payout_method(method_id)), 200

    except PayoutMethodNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to delete payout method")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# VERIFICATION
# =============================================================================

@payouts_bp.post("/methods/<int:method_id>/send-code")
def send_verification_code_route(method_id: int):
    try:
        return jsonify(payout_service.send_verification_code(method_id)), 200

    except PayoutMethodNotFound as e:
        return jsonify({"error": str(e)}), 404
    except AlreadyVerified as e:
        return jsonify({"message": str(e), "already_verified": True}), 200
    except CooldownActive as e:
        response = jsonify({"error": str(e), "retry_after_seconds": e.retry_after_seconds})
        response.headers["Retry-After"] = str(e.retry_after_seconds)
        return response, 429
    except NotificationError as e:
        return jsonify({"error": str(e)}), 502
    except Exception:
        current_app.logger.exception("Failed to send verification code")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.post("/methods/<int:method_id>/verify")
def verify_code_route(method_id: int):
    """
    Request body:
    {"code": "123456"}
    """
    try:
        data = require_object(request.get_json(silent=True))
        code = require_text(data.get("code"), "code", max_length=12)
        method = payout_service.verify_code(method_id, code)
        return jsonify({"payout_method": method.to_dict(), "already_verified": False}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PayoutMethodNotFound as e:
        return jsonify({"error": str(e)}), 404
    except AlreadyVerified:
        method = payout_service.get_payout_method(method_id)
        return jsonify({"payout_method": method.to_dict(), "already_verified": True}), 200
    except Expired as e:
        return jsonify({"error": str(e), "code": "expired"}), 410
    except Mismatch as e:
        return jsonify({"error": str(e), "code": "mismatch", "attempts_remaining": e.attempts_remaining}), 400
    except TooManyAttempts as e:
        return jsonify({"error": str(e), "code": "too_many_attempts"}), 400
    except NoCodeIssued as e:
        return jsonify({"error": str(e), "code": "no_code_issued"}), 400
    except Exception:
        current_app.logger.exception("Failed to verify payout method")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.get("/methods/<int:method_id>/verification")
def verification_status_route(method_id: int):
    try:
        return jsonify(payout_service.get_verification_status(method_id)), 200
    except PayoutMethodNotFound as e:
        return jsonify({"error": str(e)}), 404


# =============================================================================
# BALANCE
# =============================================================================

@payouts_bp.get("/sellers/<int:seller_id>/balance")
def payout_balance_route(seller_id: int):
    balance = payout_service.get_payout_balance(seller_id)
    entries = payout_service.list_payout_entries(seller_id, limit=request.args.get("limit", 50, type=int))
    return jsonify({**balance, "entries": [e.to_dict() for e in entries]}), 200

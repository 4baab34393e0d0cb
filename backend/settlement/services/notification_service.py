# Overview: Service-layer operations for outbound notifications; dispatches verification codes.

"""
Verification code delivery.

Message content and transport belong to the host application. It plugs a
sender in with register_code_sender(app, sender); the default sender only
logs the (masked) destination.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from flask import current_app


logger = logging.getLogger(__name__)

SENDER_EXTENSION_KEY = "settlement.code_sender"


class NotificationError(Exception):
    pass


@dataclass(frozen=True)
class CodeMessage:
    channel: str  # "email" | "sms"
    destination: str
    code: str
    payout_method_id: int
    expires_in_minutes: int


def mask_destination(destination: str) -> str:
    if "@" in destination:
        local, _, domain = destination.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{destination[-4:]}"


def _log_sender(message: CodeMessage) -> None:
    logger.info(
        "Verification code for payout method %s sent via %s to %s",
        message.payout_method_id,
        message.channel,
        mask_destination(message.destination),
    )


def register_code_sender(app, sender: Callable[[CodeMessage], None]) -> None:
    app.extensions[SENDER_EXTENSION_KEY] = sender


def deliver_verification_code(message: CodeMessage) -> None:
    sender = current_app.extensions.get(SENDER_EXTENSION_KEY, _log_sender)
    try:
        sender(message)
    except Exception as exc:
        logger.exception("Failed to deliver verification code for payout method %s", message.payout_method_id)
        raise NotificationError(f"Could not deliver verification code: {exc}") from exc

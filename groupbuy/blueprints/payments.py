"""
Payment endpoints: intent creation for the client and the processor webhook.

The webhook body is verified against the Stripe-Signature header before it is
parsed or any state is read.
"""
from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from groupbuy.blueprints.common import checkout_service, current_user_id, json_body, payment_gateway
from groupbuy.config import Config
from groupbuy.database import get_db
from groupbuy.errors import AuthorizationError, ValidationError
from groupbuy.money import quantize_amount
from groupbuy.services.settlement_service import LINE_ITEM_METADATA_KEYS, SettlementService

payments_bp = Blueprint("payments", __name__)
logger = logging.getLogger(__name__)


@payments_bp.route("/create-payment-intent", methods=["POST"])
def api_create_payment_intent():
    user_id = current_user_id()
    payload = json_body()
    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    if payload.get("amount") is None:
        raise ValidationError("amount is required")
    amount = quantize_amount(payload["amount"])

    if any(key in metadata for key in LINE_ITEM_METADATA_KEYS):
        # Any intent naming a line item goes through the owner checks below
        line_item_ref = next((metadata[key] for key in LINE_ITEM_METADATA_KEYS if metadata.get(key) is not None), None)
        try:
            line_item_id = int(line_item_ref)
        except (TypeError, ValueError):
            raise ValidationError("metadata.line_item_id must be an integer") from None
        service = checkout_service()
        item = service.get_line_item(line_item_id)
        if item.user_id != user_id:
            raise AuthorizationError("You can only pay for your own checkout items")
        if amount != quantize_amount(item.total_price):
            raise ValidationError("amount does not match the checkout item total")
        result = service.initiate_payment(line_item_id, user_id)
        return jsonify(result.to_dict())

    config = current_app.extensions.get("groupbuy.config", Config)
    currency = payload.get("currency") or config.PAYMENT_CURRENCY
    result = payment_gateway().create_payment_intent(
        amount,
        currency,
        metadata={**metadata, "user_id": user_id},
    )
    return jsonify(result.to_dict())


@payments_bp.route("/stripe-webhook", methods=["POST"])
def stripe_webhook():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    event = payment_gateway().verify_webhook(payload, signature)

    outcome = SettlementService(get_db(), checkout_service()).handle_event(event)
    logger.info("Webhook %s handled", event.get("type"), extra={"event_id": event.get("id"), "outcome": outcome})
    return jsonify({"received": True, "outcome": outcome})

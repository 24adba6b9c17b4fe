"""
Applies verified payment processor events to checkout line items.

Every event id is written to payment_webhook_events in the same transaction
as its effect, so a redelivered event is acknowledged without touching any
line item. A paid line item is never moved back out of `paid`, and a success
only settles an item when it was paid by the item's owner for the full total.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbuy.errors import ValidationError
from groupbuy.models import CheckoutLineItem, PaymentStatus, PaymentWebhookEvent, utcnow
from groupbuy.money import to_minor_units
from groupbuy.observability import increment_counter, record_event
from groupbuy.services.checkout_service import CheckoutService

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

OUTCOME_PAID = "paid"
OUTCOME_FAILED = "failed"
OUTCOME_NOOP = "noop"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_REJECTED = "rejected"

# Older clients tagged intents with checkout_item_id
LINE_ITEM_METADATA_KEYS = ("line_item_id", "checkout_item_id")


class SettlementService:
    def __init__(self, db_session: Session, checkout_service: Optional[CheckoutService] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.checkout_service = checkout_service or CheckoutService(db_session)

    def handle_event(self, event: Dict[str, Any]) -> str:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_type:
            raise ValidationError("Event type is missing")

        if event_id and self._already_processed(event_id):
            increment_counter("payment_webhook_events_total", labels={"type": event_type, "outcome": OUTCOME_DUPLICATE})
            self.logger.info("Webhook event %s already processed", event_id)
            return OUTCOME_DUPLICATE

        intent = (event.get("data") or {}).get("object") or {}
        try:
            if event_type == PAYMENT_SUCCEEDED:
                outcome = self._apply_success(intent)
            elif event_type == PAYMENT_FAILED:
                outcome = self._apply_failure(intent)
            else:
                self.logger.info("Ignoring webhook event type %s", event_type)
                outcome = OUTCOME_IGNORED

            if event_id:
                self.db.add(PaymentWebhookEvent(processor_event_id=event_id, event_type=event_type, outcome=outcome))
            self.db.commit()
        except IntegrityError:
            # The same event was applied by a concurrent delivery
            self.db.rollback()
            outcome = OUTCOME_DUPLICATE
        except Exception:
            self.db.rollback()
            raise

        increment_counter("payment_webhook_events_total", labels={"type": event_type, "outcome": outcome})
        return outcome

    def _already_processed(self, event_id: str) -> bool:
        return self.db.query(PaymentWebhookEvent.id).filter_by(processor_event_id=event_id).first() is not None

    def _apply_success(self, intent: Dict[str, Any]) -> str:
        intent_id = intent.get("id")
        item = self._find_line_item(intent)
        if item is None:
            self._report_unmatched(PAYMENT_SUCCEEDED, intent)
            return OUTCOME_UNMATCHED

        if item.is_paid:
            if intent_id and item.payment_reference != intent_id:
                # Two intents settled for one item; needs a manual refund
                self.logger.error(
                    "Checkout item %s already paid by %s; second payment %s received",
                    item.id,
                    item.payment_reference,
                    intent_id,
                )
                record_event(
                    "payment_duplicate_settlement",
                    {"line_item_id": item.id, "payment_reference": item.payment_reference, "intent_id": intent_id},
                )
            return OUTCOME_NOOP

        rejection = self._settlement_problem(item, intent)
        if rejection is not None:
            self.logger.error(
                "Refusing to settle checkout item %s: %s",
                item.id,
                rejection,
                extra={"payment_intent_id": intent_id},
            )
            record_event(
                "payment_settlement_rejected",
                {"line_item_id": item.id, "intent_id": intent_id, "reason": rejection},
            )
            return OUTCOME_REJECTED

        item.mark_paid(intent_id or item.payment_reference, paid_at=utcnow())
        checkout_session = item.session
        if not checkout_session.is_open:
            self.logger.warning(
                "Payment settled for checkout item %s after session %s was %s",
                item.id,
                checkout_session.id,
                checkout_session.status.value,
            )
        self.checkout_service.refresh_session_status(checkout_session)
        record_event("checkout_item_paid", {"line_item_id": item.id, "session_id": checkout_session.id})
        self.logger.info("Checkout item %s paid", item.id, extra={"payment_intent_id": intent_id})
        return OUTCOME_PAID

    def _apply_failure(self, intent: Dict[str, Any]) -> str:
        intent_id = intent.get("id")
        item = self._find_line_item(intent)
        if item is None:
            self._report_unmatched(PAYMENT_FAILED, intent)
            return OUTCOME_UNMATCHED

        if item.is_paid:
            self.logger.info("Ignoring payment failure for already paid checkout item %s", item.id)
            return OUTCOME_NOOP
        if item.payment_reference and intent_id and intent_id != item.payment_reference:
            self.logger.warning(
                "Ignoring stale payment failure %s for checkout item %s (current intent %s)",
                intent_id,
                item.id,
                item.payment_reference,
            )
            return OUTCOME_IGNORED
        if item.payment_status == PaymentStatus.FAILED:
            return OUTCOME_NOOP

        item.transition_to(PaymentStatus.FAILED)
        error = intent.get("last_payment_error") or {}
        record_event(
            "checkout_item_payment_failed",
            {"line_item_id": item.id, "intent_id": intent_id, "reason": error.get("message")},
        )
        self.logger.info("Payment failed for checkout item %s", item.id, extra={"payment_intent_id": intent_id})
        return OUTCOME_FAILED

    def _find_line_item(self, intent: Dict[str, Any]) -> Optional[CheckoutLineItem]:
        metadata = intent.get("metadata") or {}
        for key in LINE_ITEM_METADATA_KEYS:
            raw = metadata.get(key)
            if raw is None:
                continue
            try:
                line_item_id = int(raw)
            except (TypeError, ValueError):
                self.logger.warning("Webhook metadata %s=%r is not an id", key, raw)
                return None
            return self.db.query(CheckoutLineItem).filter_by(id=line_item_id).first()

        intent_id = intent.get("id")
        if intent_id:
            return self.db.query(CheckoutLineItem).filter_by(payment_reference=intent_id).first()
        return None

    def _settlement_problem(self, item: CheckoutLineItem, intent: Dict[str, Any]) -> Optional[str]:
        """
        Return why this intent may not settle the item, or None when it may.

        An intent settles an item when it is the item's current intent or was
        created for the item's owner, and it covers the full line total.
        Overpayment is reported but still settles.
        """
        intent_id = intent.get("id")
        if not (intent_id and intent_id == item.payment_reference):
            payer = (intent.get("metadata") or {}).get("user_id")
            if payer is None or str(payer) != str(item.user_id):
                return "payer_mismatch"

        received = intent.get("amount_received", intent.get("amount"))
        if received is None:
            return None
        try:
            received = int(received)
        except (TypeError, ValueError):
            return "amount_unreadable"
        expected = to_minor_units(item.total_price)
        if received < expected:
            return "amount_short"
        if received > expected:
            self.logger.warning(
                "Overpayment for checkout item %s: expected %s, received %s",
                item.id,
                expected,
                received,
            )
            record_event(
                "payment_amount_mismatch",
                {"line_item_id": item.id, "expected": expected, "received": received},
            )
        return None

    def _report_unmatched(self, event_type: str, intent: Dict[str, Any]) -> None:
        self.logger.warning(
            "Webhook %s does not match any checkout item",
            event_type,
            extra={"payment_intent_id": intent.get("id"), "metadata": intent.get("metadata") or {}},
        )
        record_event("payment_webhook_unmatched", {"type": event_type, "intent_id": intent.get("id")})

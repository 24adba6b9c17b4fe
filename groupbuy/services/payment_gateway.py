"""
Stripe-backed payment gateway.

The client is constructed from configuration and handed to the services that
need it; nothing here touches Stripe's module-level api_key.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from groupbuy.config import Config
from groupbuy.errors import ExternalServiceError, ValidationError, WebhookSignatureError
from groupbuy.money import Amount, to_minor_units
from groupbuy.observability import increment_counter, timed


@dataclass(frozen=True)
class PaymentIntentResult:
    client_secret: str
    payment_intent_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"clientSecret": self.client_secret, "paymentIntentId": self.payment_intent_id}


class StripePaymentGateway:
    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: int = 10,
        webhook_tolerance_seconds: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.logger = logging.getLogger(__name__)
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    @classmethod
    def from_config(cls, config: type[Config] = Config) -> "StripePaymentGateway":
        return cls(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=config.STRIPE_API_TIMEOUT_SECONDS,
            webhook_tolerance_seconds=config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )

    def create_payment_intent(
        self,
        amount: Amount,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentIntentResult:
        if not currency or not isinstance(currency, str):
            raise ValidationError("currency is required")
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            # Stripe metadata values must be strings
            "metadata": {str(k): str(v) for k, v in (metadata or {}).items() if v is not None},
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        try:
            with timed("payment_gateway_latency_ms", labels={"operation": "create_payment_intent"}):
                intent = self.client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            increment_counter("payment_gateway_errors_total", labels={"operation": "create_payment_intent"})
            message = getattr(exc, "user_message", None) or str(exc) or "Payment processor error"
            self.logger.warning(
                "Payment intent creation failed",
                extra={"amount_minor": params["amount"], "error_type": type(exc).__name__},
            )
            raise ExternalServiceError(message) from exc

        increment_counter("payment_intents_created_total")
        return PaymentIntentResult(client_secret=intent.client_secret, payment_intent_id=intent.id)

    def verify_webhook(self, payload: bytes | str, signature_header: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and return the event as a plain dict."""
        if not signature_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise WebhookSignatureError("Webhook payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                tolerance=self.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            increment_counter("payment_webhook_rejected_total", labels={"reason": "signature"})
            raise WebhookSignatureError("Signature verification failed") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            increment_counter("payment_webhook_rejected_total", labels={"reason": "payload"})
            raise WebhookSignatureError("Invalid JSON payload") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise WebhookSignatureError("Webhook payload is not an event")
        return event

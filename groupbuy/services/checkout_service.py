from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbuy.config import Config
from groupbuy.errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from groupbuy.models import (
    OPEN_SESSION_STATUSES,
    CartItem,
    CheckoutLineItem,
    CheckoutNotification,
    CheckoutSession,
    CheckoutSessionStatus,
    GroupMembership,
    PaymentStatus,
    Product,
    utcnow,
)
from groupbuy.money import apply_discount, line_total, quantize_amount
from groupbuy.observability import increment_counter, record_event
from groupbuy.services.discount_service import DiscountCatalogService
from groupbuy.services.membership_service import GroupMembershipService
from groupbuy.services.notification_service import NotificationService
from groupbuy.services.payment_gateway import PaymentIntentResult, StripePaymentGateway


class CheckoutService:
    """
    Shared checkout sessions for groups.

    A session is a point-in-time copy of the members' carts: the discount is
    resolved once when it opens and line item prices never change afterwards.
    Each member pays their own line items; settlement arrives through the
    payment webhook (see SettlementService).
    """

    def __init__(
        self,
        db_session: Session,
        payment_gateway: Optional[StripePaymentGateway] = None,
        config: type[Config] = Config,
        discount_service: Optional[DiscountCatalogService] = None,
        membership_service: Optional[GroupMembershipService] = None,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._payment_gateway = payment_gateway
        self.discount_service = discount_service or DiscountCatalogService(db_session)
        self.membership_service = membership_service or GroupMembershipService(db_session, config=config)
        self.notification_service = notification_service or NotificationService(db_session)

    @property
    def payment_gateway(self) -> StripePaymentGateway:
        if self._payment_gateway is None:
            self._payment_gateway = StripePaymentGateway.from_config(self.config)
        return self._payment_gateway

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------
    def open_checkout_session(self, group_id: int, admin_id: int, now: Optional[datetime] = None) -> CheckoutSession:
        group = self.membership_service.get_group(group_id)
        if not group.is_admin(admin_id):
            raise AuthorizationError("Only the group admin can start a group checkout")
        if group.product is None:
            raise ValidationError("Group has no product; nothing to check out")

        now = now or utcnow()
        self.expire_stale_sessions(now=now, group_id=group.id)
        if self._find_open_session(group.id) is not None:
            increment_counter("checkout_sessions_rejected_total", labels={"reason": "already_open"})
            raise ConflictError("A checkout session is already open for this group")

        cart_items = self._gather_member_cart_items(group.id, group.product.vendor_id)
        if not cart_items:
            raise ValidationError("No group member has items from this vendor in their cart")

        member_count = self.membership_service.current_member_count(group.id)
        discount = self.discount_service.resolve_discount(group.product_id, member_count)

        checkout_session = CheckoutSession(
            group_id=group.id,
            admin_id=admin_id,
            status=CheckoutSessionStatus.PENDING,
            discount_percentage=discount,
            member_count=member_count,
            created_at=now,
            expires_at=now + timedelta(hours=self.config.CHECKOUT_SESSION_TTL_HOURS),
        )
        total = Decimal("0.00")
        for cart_item in cart_items:
            unit_price = apply_discount(cart_item.product.price, discount)
            item_total = line_total(unit_price, cart_item.quantity)
            total += item_total
            checkout_session.line_items.append(
                CheckoutLineItem(
                    user_id=cart_item.user_id,
                    product_id=cart_item.product_id,
                    quantity=cart_item.quantity,
                    unit_price=unit_price,
                    total_price=item_total,
                    payment_status=PaymentStatus.PENDING,
                )
            )
        checkout_session.total_amount = quantize_amount(total)

        # Session and line items land in one commit; the partial unique index
        # turns a concurrent second open into an IntegrityError here.
        try:
            self.db.add(checkout_session)
            self.db.flush()
            self._settle_free_items(checkout_session, now)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            increment_counter("checkout_sessions_rejected_total", labels={"reason": "concurrent_open"})
            raise ConflictError("A checkout session is already open for this group") from exc

        increment_counter("checkout_sessions_opened_total")
        record_event(
            "checkout_session_opened",
            {
                "session_id": checkout_session.id,
                "group_id": group.id,
                "member_count": member_count,
                "discount_percentage": str(discount),
                "total_amount": str(checkout_session.total_amount),
                "line_items": len(cart_items),
            },
        )
        self.logger.info(
            "Checkout session %s opened for group %s",
            checkout_session.id,
            group.id,
            extra={"member_count": member_count, "discount_percentage": str(discount)},
        )
        return checkout_session

    def _settle_free_items(self, checkout_session: CheckoutSession, now: datetime) -> None:
        # A 100% tier leaves nothing to charge; the processor rejects zero amounts
        free_items = [item for item in checkout_session.line_items if Decimal(item.total_price) <= 0]
        for item in free_items:
            item.mark_paid(None, paid_at=now)
        if free_items:
            self.logger.info(
                "Settled %d free checkout item(s) in session %s", len(free_items), checkout_session.id
            )
            self.refresh_session_status(checkout_session, now)

    def _gather_member_cart_items(self, group_id: int, vendor_id: int) -> List[CartItem]:
        member_ids = select(GroupMembership.user_id).where(GroupMembership.group_id == group_id)
        return (
            self.db.query(CartItem)
            .join(Product, CartItem.product_id == Product.id)
            .filter(CartItem.user_id.in_(member_ids))
            .filter(Product.vendor_id == vendor_id)
            .filter(Product.is_active.is_(True))
            .order_by(CartItem.user_id.asc(), CartItem.id.asc())
            .all()
        )

    def _find_open_session(self, group_id: int) -> Optional[CheckoutSession]:
        return (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.group_id == group_id)
            .filter(CheckoutSession.status.in_(OPEN_SESSION_STATUSES))
            .first()
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_session(self, session_id: int) -> CheckoutSession:
        checkout_session = self.db.query(CheckoutSession).filter_by(id=session_id).first()
        if checkout_session is None:
            raise NotFoundError(f"Checkout session {session_id} not found")
        return checkout_session

    def get_current_session(self, group_id: int) -> CheckoutSession:
        """The most recently opened session for the group, whatever its status."""
        checkout_session = (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.group_id == group_id)
            .order_by(CheckoutSession.created_at.desc(), CheckoutSession.id.desc())
            .first()
        )
        if checkout_session is None:
            raise NotFoundError(f"No checkout session for group {group_id}")
        return checkout_session

    def get_line_item(self, line_item_id: int) -> CheckoutLineItem:
        item = self.db.query(CheckoutLineItem).filter_by(id=line_item_id).first()
        if item is None:
            raise NotFoundError(f"Checkout item {line_item_id} not found")
        return item

    def list_line_items(self, session_id: int, user_id: Optional[int] = None) -> List[CheckoutLineItem]:
        query = self.db.query(CheckoutLineItem).filter(CheckoutLineItem.session_id == session_id)
        if user_id is not None:
            query = query.filter(CheckoutLineItem.user_id == user_id)
        return query.order_by(CheckoutLineItem.id.asc()).all()

    # ------------------------------------------------------------------
    # Member flows
    # ------------------------------------------------------------------
    def notify_members(self, session_id: int, actor_id: int) -> List[CheckoutNotification]:
        checkout_session = self.get_session(session_id)
        group = checkout_session.group
        if not group.is_admin(actor_id):
            raise AuthorizationError("Only the group admin can notify members")
        self._ensure_accepting_payments(checkout_session)

        amounts: Dict[int, Decimal] = defaultdict(lambda: Decimal("0.00"))
        for item in checkout_session.line_items:
            if item.payment_status == PaymentStatus.PENDING:
                amounts[item.user_id] += Decimal(item.total_price)

        created = self.notification_service.publish_checkout_opened(checkout_session, group.name, dict(amounts))
        if checkout_session.status == CheckoutSessionStatus.PENDING:
            checkout_session.transition_to(CheckoutSessionStatus.MEMBER_PAYMENTS)
        try:
            self.db.commit()
        except IntegrityError:
            # Another notify call for the same session won the race
            self.db.rollback()
            return []
        self.logger.info("Notified %d member(s) for checkout session %s", len(created), session_id)
        return created

    def set_shipping_address(self, line_item_id: int, requester_id: int, address: str) -> CheckoutLineItem:
        item = self.get_line_item(line_item_id)
        if item.user_id != requester_id:
            raise AuthorizationError("You can only edit your own checkout items")
        if not isinstance(address, str) or not address.strip():
            raise ValidationError("Shipping address is required")
        if item.is_paid:
            raise ConflictError("Shipping address cannot change after payment")
        item.shipping_address = address.strip()
        self.db.commit()
        return item

    def initiate_payment(
        self,
        line_item_id: int,
        requester_id: int,
        now: Optional[datetime] = None,
    ) -> PaymentIntentResult:
        """
        Create a payment intent for one line item.

        The read transaction is closed before the processor call and the
        result is written in a second short transaction, so no row stays
        locked while waiting on the network.
        """
        item = self.get_line_item(line_item_id)
        if item.user_id != requester_id:
            raise AuthorizationError("You can only pay for your own checkout items")
        checkout_session = item.session
        self._ensure_accepting_payments(checkout_session, now)
        if item.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise ConflictError("This checkout item is already paid")
        if not item.shipping_address:
            raise ValidationError("Add a shipping address before paying")

        status_before = item.payment_status
        attempt = (item.payment_attempts or 0) + 1
        amount = Decimal(item.total_price)
        metadata = {
            "line_item_id": item.id,
            "user_id": item.user_id,
            "group_id": checkout_session.group_id,
            "session_id": checkout_session.id,
        }
        description = f"Group order #{checkout_session.id}, item {item.id}"
        self.db.commit()

        try:
            result = self.payment_gateway.create_payment_intent(
                amount,
                self.config.PAYMENT_CURRENCY,
                metadata=metadata,
                idempotency_key=f"group-checkout-item-{line_item_id}-attempt-{attempt}",
                description=description,
            )
        except ExternalServiceError:
            increment_counter("checkout_payment_initiations_total", labels={"outcome": "error"})
            self.logger.warning("Payment initiation failed for checkout item %s", line_item_id)
            raise

        item = self.get_line_item(line_item_id)
        if item.is_paid:
            # Settlement for an earlier intent landed while we were waiting
            self.logger.info("Checkout item %s settled during initiation; keeping paid state", line_item_id)
            return result
        if item.payment_status == PaymentStatus.FAILED:
            if status_before == PaymentStatus.FAILED:
                item.transition_to(PaymentStatus.PENDING)
            else:
                # The new intent failed before its reference was stored
                self.logger.info("Checkout item %s failed during initiation; keeping failed state", line_item_id)
        item.payment_reference = result.payment_intent_id
        item.payment_attempts = max(item.payment_attempts or 0, attempt)
        if item.session.status == CheckoutSessionStatus.PENDING:
            item.session.transition_to(CheckoutSessionStatus.MEMBER_PAYMENTS)
        self.db.commit()

        increment_counter("checkout_payment_initiations_total", labels={"outcome": "created"})
        self.logger.info(
            "Payment intent created for checkout item %s",
            line_item_id,
            extra={"payment_intent_id": result.payment_intent_id, "attempt": attempt},
        )
        return result

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def refresh_session_status(self, checkout_session: CheckoutSession, now: Optional[datetime] = None) -> bool:
        """Mark the session completed once every line item is paid. Caller commits."""
        if not checkout_session.is_open or not checkout_session.line_items:
            return False
        if all(item.is_paid for item in checkout_session.line_items):
            checkout_session.transition_to(CheckoutSessionStatus.COMPLETED)
            checkout_session.completed_at = now or utcnow()
            increment_counter("checkout_sessions_completed_total")
            record_event("checkout_session_completed", {"session_id": checkout_session.id})
            self.logger.info("Checkout session %s completed", checkout_session.id)
            return True
        return False

    def cancel_session(self, session_id: int, admin_id: int, reason: str = "cancelled_by_admin") -> CheckoutSession:
        checkout_session = self.get_session(session_id)
        if not checkout_session.group.is_admin(admin_id):
            raise AuthorizationError("Only the group admin can cancel a checkout")
        if not checkout_session.is_open:
            raise ConflictError(f"Checkout session is already {checkout_session.status.value}")
        if any(item.is_paid for item in checkout_session.line_items):
            raise ConflictError("Checkout session has paid items and cannot be cancelled")
        self._cancel(checkout_session, reason, utcnow())
        self.db.commit()
        return checkout_session

    def expire_stale_sessions(self, now: Optional[datetime] = None, group_id: Optional[int] = None) -> int:
        """
        Cancel open sessions whose expiry has passed. Meant to be driven by a
        periodic job (see the `expire-checkouts` CLI command); opening a new
        session also sweeps the group's own stale sessions first.
        """
        now = now or utcnow()
        query = (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.status.in_(OPEN_SESSION_STATUSES))
            .filter(CheckoutSession.expires_at <= now)
        )
        if group_id is not None:
            query = query.filter(CheckoutSession.group_id == group_id)
        stale = query.all()
        for checkout_session in stale:
            self._cancel(checkout_session, "expired", now)
        if stale:
            self.db.commit()
            self.logger.info("Expired %d checkout session(s)", len(stale))
        return len(stale)

    def _cancel(self, checkout_session: CheckoutSession, reason: str, now: datetime) -> None:
        checkout_session.transition_to(CheckoutSessionStatus.CANCELLED)
        checkout_session.cancelled_at = now
        checkout_session.cancel_reason = reason
        increment_counter("checkout_sessions_cancelled_total", labels={"reason": reason})
        record_event("checkout_session_cancelled", {"session_id": checkout_session.id, "reason": reason})

    def _ensure_accepting_payments(self, checkout_session: CheckoutSession, now: Optional[datetime] = None) -> None:
        if checkout_session.is_expired(now):
            raise ConflictError("Checkout session has expired")
        if not checkout_session.is_open:
            raise ConflictError(f"Checkout session is {checkout_session.status.value}")

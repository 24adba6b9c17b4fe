"""
Checkout notifications.

One row per (checkout session, member) in group_checkout_notifications. The
unique constraint on that pair makes repeated "notify members" calls safe.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from groupbuy.errors import NotFoundError
from groupbuy.models import CheckoutNotification, CheckoutSession, utcnow
from groupbuy.observability import increment_counter, record_event


class NotificationService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def publish_checkout_opened(
        self,
        checkout_session: CheckoutSession,
        group_name: str,
        user_amounts: dict[int, Decimal],
    ) -> List[CheckoutNotification]:
        """
        Create a payment reminder for each member in `user_amounts` who has not
        been notified for this session yet. Caller commits.
        """
        already_notified = {
            row.user_id
            for row in self.db.query(CheckoutNotification.user_id)
            .filter(CheckoutNotification.session_id == checkout_session.id)
            .all()
        }
        created: List[CheckoutNotification] = []
        for user_id, amount in sorted(user_amounts.items()):
            if user_id in already_notified:
                continue
            notification = CheckoutNotification(
                session_id=checkout_session.id,
                user_id=user_id,
                title=f"Group checkout open: {group_name}",
                message=(
                    f"Your share of the group order is {amount:.2f} "
                    f"({checkout_session.discount_percentage}% group discount). "
                    "Add a shipping address and pay before the session expires."
                ),
            )
            self.db.add(notification)
            created.append(notification)

        if created:
            increment_counter("checkout_notifications_created_total", amount=len(created))
            record_event(
                "checkout_members_notified",
                {"session_id": checkout_session.id, "user_ids": [n.user_id for n in created]},
            )
        return created

    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 20) -> List[CheckoutNotification]:
        query = self.db.query(CheckoutNotification).filter(CheckoutNotification.user_id == user_id)
        if unread_only:
            query = query.filter(CheckoutNotification.read_at.is_(None))
        return query.order_by(CheckoutNotification.created_at.desc(), CheckoutNotification.id.desc()).limit(limit).all()

    def unread_count(self, user_id: int) -> int:
        return (
            self.db.query(func.count(CheckoutNotification.id))
            .filter(CheckoutNotification.user_id == user_id, CheckoutNotification.read_at.is_(None))
            .scalar()
        ) or 0

    def mark_as_read(self, user_id: int, notification_id: int) -> CheckoutNotification:
        notification = (
            self.db.query(CheckoutNotification)
            .filter_by(id=notification_id, user_id=user_id)
            .first()
        )
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if notification.read_at is None:
            notification.read_at = utcnow()
            self.db.commit()
        return notification

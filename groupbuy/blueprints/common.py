"""Request helpers and JSON serializers shared by the API blueprints."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app, request, session

from groupbuy.config import Config
from groupbuy.database import get_db
from groupbuy.errors import AuthenticationError, ValidationError
from groupbuy.models import (
    CartItem,
    CheckoutLineItem,
    CheckoutSession,
    DiscountTier,
    Group,
    GroupInvite,
    GroupJoinRequest,
    GroupMembership,
    as_utc,
)
from groupbuy.services.checkout_service import CheckoutService
from groupbuy.services.payment_gateway import StripePaymentGateway

PAYMENT_GATEWAY_EXTENSION = "groupbuy.payment_gateway"


def current_user_id() -> int:
    user_id = session.get("user_id")
    if user_id is None:
        raise AuthenticationError("Not authenticated")
    return int(user_id)


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def require_int(payload: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    raw = payload.get(key, default)
    if raw is None:
        raise ValidationError(f"{key} is required")
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None


def payment_gateway() -> StripePaymentGateway:
    gateway = current_app.extensions.get(PAYMENT_GATEWAY_EXTENSION)
    if gateway is None:
        gateway = StripePaymentGateway.from_config(current_app.extensions.get("groupbuy.config", Config))
        current_app.extensions[PAYMENT_GATEWAY_EXTENSION] = gateway
    return gateway


def checkout_service() -> CheckoutService:
    config = current_app.extensions.get("groupbuy.config", Config)
    return CheckoutService(get_db(), payment_gateway=payment_gateway(), config=config)


def _money(value) -> Optional[str]:
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


def _timestamp(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def serialize_tier(tier: DiscountTier) -> Dict[str, Any]:
    return {
        "tier_number": tier.tier_number,
        "members_required": tier.members_required,
        "discount_percentage": _money(tier.discount_percentage),
    }


def serialize_group(group: Group, member_count: int) -> Dict[str, Any]:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "creator_id": group.creator_id,
        "product_id": group.product_id,
        "is_private": group.is_private,
        "member_limit": group.member_limit,
        "member_count": member_count,
        "created_at": _timestamp(group.created_at),
    }


def serialize_membership(membership: GroupMembership) -> Dict[str, Any]:
    return {
        "group_id": membership.group_id,
        "user_id": membership.user_id,
        "joined_at": _timestamp(membership.joined_at),
    }


def serialize_join_request(join_request: GroupJoinRequest) -> Dict[str, Any]:
    return {
        "id": join_request.id,
        "group_id": join_request.group_id,
        "user_id": join_request.user_id,
        "message": join_request.message,
        "status": join_request.status.value,
        "reviewed_by": join_request.reviewed_by,
        "reviewed_at": _timestamp(join_request.reviewed_at),
    }


def serialize_invite(invite: GroupInvite) -> Dict[str, Any]:
    return {
        "id": invite.id,
        "group_id": invite.group_id,
        "invited_email": invite.invited_email,
        "status": invite.status.value,
    }


def serialize_cart_item(item: CartItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "user_id": item.user_id,
        "product_id": item.product_id,
        "quantity": item.quantity,
    }


def serialize_line_item(item: CheckoutLineItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "session_id": item.session_id,
        "user_id": item.user_id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "unit_price": _money(item.unit_price),
        "total_price": _money(item.total_price),
        "shipping_address": item.shipping_address,
        "payment_status": item.payment_status.value,
        "paid_at": _timestamp(item.paid_at),
    }


def serialize_checkout_session(
    checkout_session: CheckoutSession,
    viewer_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Members see their own line items; the group admin sees all of them."""
    items = checkout_session.line_items
    if viewer_id is not None and not checkout_session.group.is_admin(viewer_id):
        items = [item for item in items if item.user_id == viewer_id]
    paid = sum(1 for item in checkout_session.line_items if item.is_paid)
    return {
        "id": checkout_session.id,
        "group_id": checkout_session.group_id,
        "admin_id": checkout_session.admin_id,
        "status": checkout_session.effective_status().value,
        "discount_percentage": _money(checkout_session.discount_percentage),
        "member_count": checkout_session.member_count,
        "total_amount": _money(checkout_session.total_amount),
        "created_at": _timestamp(checkout_session.created_at),
        "expires_at": _timestamp(checkout_session.expires_at),
        "completed_at": _timestamp(checkout_session.completed_at),
        "cancelled_at": _timestamp(checkout_session.cancelled_at),
        "cancel_reason": checkout_session.cancel_reason,
        "paid_items": paid,
        "total_items": len(checkout_session.line_items),
        "line_items": [serialize_line_item(item) for item in items],
    }

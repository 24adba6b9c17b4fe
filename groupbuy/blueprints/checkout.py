from __future__ import annotations

from flask import Blueprint, jsonify, request

from groupbuy.blueprints.common import (
    checkout_service,
    current_user_id,
    json_body,
    serialize_checkout_session,
    serialize_line_item,
)
from groupbuy.database import get_db
from groupbuy.errors import AuthorizationError
from groupbuy.services.membership_service import GroupMembershipService
from groupbuy.services.notification_service import NotificationService

checkout_bp = Blueprint("checkout", __name__)


@checkout_bp.route("/api/groups/<int:group_id>/checkout-sessions", methods=["POST"])
def api_open_checkout(group_id: int):
    user_id = current_user_id()
    checkout_session = checkout_service().open_checkout_session(group_id, user_id)
    return jsonify({"checkout_session": serialize_checkout_session(checkout_session, user_id)}), 201


@checkout_bp.route("/api/groups/<int:group_id>/checkout-sessions/current", methods=["GET"])
def api_current_checkout(group_id: int):
    user_id = current_user_id()
    if not GroupMembershipService(get_db()).is_member(group_id, user_id):
        raise AuthorizationError("Only group members can view the group checkout")
    checkout_session = checkout_service().get_current_session(group_id)
    return jsonify({"checkout_session": serialize_checkout_session(checkout_session, user_id)})


@checkout_bp.route("/api/checkout-sessions/<int:session_id>/notify", methods=["POST"])
def api_notify_members(session_id: int):
    user_id = current_user_id()
    created = checkout_service().notify_members(session_id, user_id)
    return jsonify({"notified_user_ids": [n.user_id for n in created]})


@checkout_bp.route("/api/checkout-sessions/<int:session_id>/cancel", methods=["POST"])
def api_cancel_checkout(session_id: int):
    user_id = current_user_id()
    checkout_session = checkout_service().cancel_session(session_id, user_id)
    return jsonify({"checkout_session": serialize_checkout_session(checkout_session, user_id)})


@checkout_bp.route("/api/checkout-items/<int:item_id>/shipping-address", methods=["PUT"])
def api_set_shipping_address(item_id: int):
    user_id = current_user_id()
    payload = json_body()
    item = checkout_service().set_shipping_address(item_id, user_id, payload.get("shipping_address"))
    return jsonify({"line_item": serialize_line_item(item)})


@checkout_bp.route("/api/checkout-items/<int:item_id>/pay", methods=["POST"])
def api_pay_line_item(item_id: int):
    user_id = current_user_id()
    result = checkout_service().initiate_payment(item_id, user_id)
    return jsonify(result.to_dict())


@checkout_bp.route("/api/notifications", methods=["GET"])
def api_get_notifications():
    user_id = current_user_id()
    service = NotificationService(get_db())
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    try:
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except ValueError:
        limit = 20
    notifications = service.list_for_user(user_id, unread_only=unread_only, limit=limit)
    return jsonify({
        "notifications": [n.to_dict() for n in notifications],
        "unread_count": service.unread_count(user_id),
    })


@checkout_bp.route("/api/notifications/<int:notification_id>/read", methods=["POST"])
def api_mark_notification_read(notification_id: int):
    user_id = current_user_id()
    service = NotificationService(get_db())
    notification = service.mark_as_read(user_id, notification_id)
    return jsonify({
        "notification": notification.to_dict(),
        "unread_count": service.unread_count(user_id),
    })

from __future__ import annotations

from flask import Blueprint, jsonify

from groupbuy.blueprints.common import (
    current_user_id,
    json_body,
    require_int,
    serialize_cart_item,
    serialize_group,
    serialize_invite,
    serialize_join_request,
    serialize_membership,
)
from groupbuy.database import get_db
from groupbuy.errors import ValidationError
from groupbuy.services.cart_service import CartService
from groupbuy.services.membership_service import GroupMembershipService

groups_bp = Blueprint("groups", __name__)


def _get_membership_service() -> GroupMembershipService:
    return GroupMembershipService(get_db())


@groups_bp.route("/api/groups", methods=["POST"])
def api_create_group():
    user_id = current_user_id()
    payload = json_body()
    product_id = payload.get("product_id")
    member_limit = payload.get("member_limit")

    service = _get_membership_service()
    group = service.create_group(
        creator_id=user_id,
        name=payload.get("name") or "",
        description=payload.get("description"),
        product_id=require_int(payload, "product_id") if product_id is not None else None,
        is_private=bool(payload.get("is_private", True)),
        member_limit=require_int(payload, "member_limit") if member_limit is not None else None,
    )
    return jsonify({"group": serialize_group(group, service.current_member_count(group.id))}), 201


@groups_bp.route("/api/groups/<int:group_id>", methods=["GET"])
def api_get_group(group_id: int):
    user_id = current_user_id()
    service = _get_membership_service()
    group = service.get_group(group_id)
    members = service.list_members(group_id)
    response = {
        "group": serialize_group(group, len(members)),
        "is_member": any(m.user_id == user_id for m in members),
        "is_admin": group.is_admin(user_id),
    }
    if response["is_member"]:
        response["members"] = [serialize_membership(m) for m in members]
    return jsonify(response)


@groups_bp.route("/api/groups/<int:group_id>/join", methods=["POST"])
def api_join_group(group_id: int):
    user_id = current_user_id()
    payload = json_body()
    outcome, record = _get_membership_service().join_group(group_id, user_id, payload.get("message"))
    if outcome == "joined":
        return jsonify({"status": outcome, "membership": serialize_membership(record)}), 201
    return jsonify({"status": outcome, "join_request": serialize_join_request(record)}), 202


@groups_bp.route("/api/groups/<int:group_id>/leave", methods=["POST"])
def api_leave_group(group_id: int):
    user_id = current_user_id()
    _get_membership_service().leave_group(group_id, user_id)
    return jsonify({"left": True})


@groups_bp.route("/api/join-requests/<int:request_id>/review", methods=["POST"])
def api_review_join_request(request_id: int):
    user_id = current_user_id()
    payload = json_body()
    join_request = _get_membership_service().review_join_request(
        request_id, user_id, payload.get("decision", "")
    )
    return jsonify({"join_request": serialize_join_request(join_request)})


@groups_bp.route("/api/groups/<int:group_id>/invites", methods=["POST"])
def api_invite_members(group_id: int):
    user_id = current_user_id()
    payload = json_body()
    emails = payload.get("emails")
    if not isinstance(emails, list):
        raise ValidationError("emails must be a list")
    invites = _get_membership_service().invite_members(group_id, user_id, emails)
    return jsonify({"invites": [serialize_invite(i) for i in invites]}), 201


@groups_bp.route("/api/invites/<int:invite_id>/accept", methods=["POST"])
def api_accept_invite(invite_id: int):
    user_id = current_user_id()
    membership = _get_membership_service().accept_invite(invite_id, user_id)
    return jsonify({"membership": serialize_membership(membership)})


@groups_bp.route("/api/cart", methods=["POST"])
def api_add_to_cart():
    user_id = current_user_id()
    payload = json_body()
    item = CartService(get_db()).add_to_cart(
        user_id,
        require_int(payload, "product_id"),
        require_int(payload, "quantity", default=1),
    )
    return jsonify({"cart_item": serialize_cart_item(item)})

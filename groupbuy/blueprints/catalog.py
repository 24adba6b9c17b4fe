from __future__ import annotations

from flask import Blueprint, jsonify, request

from groupbuy.blueprints.common import current_user_id, json_body, require_int, serialize_tier
from groupbuy.database import get_db
from groupbuy.errors import ValidationError
from groupbuy.services.discount_service import DiscountCatalogService

catalog_bp = Blueprint("catalog", __name__)


def _get_discount_service() -> DiscountCatalogService:
    return DiscountCatalogService(get_db())


@catalog_bp.route("/api/products/<int:product_id>/discount-tiers", methods=["GET"])
def api_list_tiers(product_id: int):
    tiers = _get_discount_service().list_tiers(product_id)
    return jsonify({"product_id": product_id, "tiers": [serialize_tier(t) for t in tiers]})


@catalog_bp.route("/api/products/<int:product_id>/discount-tiers/<int:tier_number>", methods=["PUT"])
def api_upsert_tier(product_id: int, tier_number: int):
    user_id = current_user_id()
    payload = json_body()
    if "discount_percentage" not in payload:
        raise ValidationError("discount_percentage is required")

    tier = _get_discount_service().upsert_tier(
        actor_id=user_id,
        product_id=product_id,
        tier_number=tier_number,
        members_required=require_int(payload, "members_required"),
        discount_percentage=payload["discount_percentage"],
    )
    return jsonify({"tier": serialize_tier(tier)})


@catalog_bp.route("/api/products/<int:product_id>/discount-tiers/<int:tier_number>", methods=["DELETE"])
def api_delete_tier(product_id: int, tier_number: int):
    user_id = current_user_id()
    _get_discount_service().delete_tier(user_id, product_id, tier_number)
    return jsonify({"deleted": True})


@catalog_bp.route("/api/products/<int:product_id>/discount", methods=["GET"])
def api_resolve_discount(product_id: int):
    members = require_int(request.args, "members")
    service = _get_discount_service()
    discount = service.resolve_discount(product_id, members)
    next_tier = service.next_tier(product_id, members)

    response = {
        "product_id": product_id,
        "members": members,
        "discount_percentage": f"{discount:.2f}",
        "next_tier": None,
    }
    if next_tier is not None:
        response["next_tier"] = {
            **serialize_tier(next_tier),
            "members_needed": next_tier.members_required - members,
        }
    return jsonify(response)

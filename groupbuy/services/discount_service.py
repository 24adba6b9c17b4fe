from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from groupbuy.errors import AuthorizationError, NotFoundError, ValidationError
from groupbuy.models import DiscountTier, Product
from groupbuy.money import to_decimal
from groupbuy.observability import increment_counter, record_event

ZERO = Decimal("0")


class DiscountCatalogService:
    """Per-product group discount tiers and their resolution for a member count."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def resolve_discount(self, product_id: int, member_count: int) -> Decimal:
        """
        Return the discount percentage the highest qualifying tier grants.

        Tiers are examined by members_required descending; the first one whose
        threshold is met wins. Ties on members_required go to the larger
        discount, then the lower tier number. An unknown product or a product
        without tiers yields 0.
        """
        if isinstance(member_count, bool) or not isinstance(member_count, int) or member_count < 0:
            raise ValidationError("member_count must be a non-negative integer")

        tier = (
            self.db.query(DiscountTier)
            .filter(DiscountTier.product_id == product_id)
            .filter(DiscountTier.members_required <= member_count)
            .order_by(
                DiscountTier.members_required.desc(),
                DiscountTier.discount_percentage.desc(),
                DiscountTier.tier_number.asc(),
            )
            .first()
        )
        if tier is None:
            return ZERO
        return Decimal(tier.discount_percentage)

    def next_tier(self, product_id: int, member_count: int) -> Optional[DiscountTier]:
        """The lowest tier the group has not reached yet, if any."""
        return (
            self.db.query(DiscountTier)
            .filter(DiscountTier.product_id == product_id)
            .filter(DiscountTier.members_required > member_count)
            .order_by(DiscountTier.members_required.asc(), DiscountTier.discount_percentage.desc())
            .first()
        )

    def list_tiers(self, product_id: int) -> List[DiscountTier]:
        return (
            self.db.query(DiscountTier)
            .filter_by(product_id=product_id)
            .order_by(DiscountTier.tier_number.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Vendor management
    # ------------------------------------------------------------------
    def upsert_tier(
        self,
        actor_id: int,
        product_id: int,
        tier_number: int,
        members_required: int,
        discount_percentage,
    ) -> DiscountTier:
        product = self._get_owned_product(actor_id, product_id)

        if not isinstance(tier_number, int) or tier_number < 1:
            raise ValidationError("tier_number must be a positive integer")
        if isinstance(members_required, bool) or not isinstance(members_required, int) or members_required < 1:
            raise ValidationError("members_required must be a positive integer")
        pct = to_decimal(discount_percentage)
        if pct < 0 or pct > 100:
            raise ValidationError("discount_percentage must be between 0 and 100")

        tiers = {tier.tier_number: tier for tier in self.list_tiers(product.id)}
        candidate = [
            (tier.members_required, Decimal(tier.discount_percentage), number)
            for number, tier in tiers.items()
            if number != tier_number
        ]
        candidate.append((members_required, pct, tier_number))
        self._ensure_monotonic(candidate)

        tier = tiers.get(tier_number)
        created = tier is None
        if created:
            tier = DiscountTier(product_id=product.id, tier_number=tier_number)
            self.db.add(tier)
        tier.members_required = members_required
        tier.discount_percentage = pct
        self.db.commit()

        increment_counter("discount_tiers_written_total", labels={"op": "create" if created else "update"})
        record_event(
            "discount_tier_written",
            {"product_id": product.id, "tier_number": tier_number, "members_required": members_required},
        )
        self.logger.info(
            "Discount tier %s %s for product %s",
            tier_number,
            "created" if created else "updated",
            product.id,
            extra={"members_required": members_required, "discount_percentage": str(pct)},
        )
        return tier

    def delete_tier(self, actor_id: int, product_id: int, tier_number: int) -> None:
        product = self._get_owned_product(actor_id, product_id)
        tier = (
            self.db.query(DiscountTier)
            .filter_by(product_id=product.id, tier_number=tier_number)
            .first()
        )
        if tier is None:
            raise NotFoundError(f"Tier {tier_number} not found for product {product_id}")
        self.db.delete(tier)
        self.db.commit()
        increment_counter("discount_tiers_written_total", labels={"op": "delete"})
        self.logger.info("Discount tier %s deleted for product %s", tier_number, product.id)

    def _get_owned_product(self, actor_id: int, product_id: int) -> Product:
        product = self.db.query(Product).filter_by(id=product_id).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        if product.vendor_id != actor_id:
            raise AuthorizationError("Only the product's vendor can manage its discount tiers")
        return product

    @staticmethod
    def _ensure_monotonic(tiers) -> None:
        """More members must never yield a smaller discount."""
        ordered = sorted(tiers, key=lambda t: (t[0], t[1]))
        for (prev_members, prev_pct, prev_no), (members, pct, number) in zip(ordered, ordered[1:]):
            if pct < prev_pct:
                raise ValidationError(
                    f"Tier {number} ({members} members, {pct}%) would give less discount than "
                    f"tier {prev_no} ({prev_members} members, {prev_pct}%)"
                )

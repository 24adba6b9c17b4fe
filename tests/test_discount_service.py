from __future__ import annotations

from decimal import Decimal

import pytest

from groupbuy.errors import AuthorizationError, NotFoundError, ValidationError
from groupbuy.models import DiscountTier
from groupbuy.services.discount_service import DiscountCatalogService


@pytest.fixture
def catalog(db_session, factory):
    vendor = factory.vendor()
    product = factory.product(vendor, price="50.00")
    factory.tier(product, 1, 3, "10")
    factory.tier(product, 2, 6, "20")
    return vendor, product, DiscountCatalogService(db_session)


@pytest.mark.parametrize(
    "members, expected",
    [(0, "0"), (2, "0"), (3, "10"), (5, "10"), (6, "20"), (40, "20")],
)
def test_resolve_discount_picks_highest_qualifying_tier(catalog, members, expected):
    _, product, service = catalog
    assert service.resolve_discount(product.id, members) == Decimal(expected)


def test_resolve_discount_unknown_product_is_zero(catalog):
    _, _, service = catalog
    assert service.resolve_discount(9999, 10) == Decimal("0")


def test_resolve_discount_rejects_negative_member_count(catalog):
    _, product, service = catalog
    with pytest.raises(ValidationError):
        service.resolve_discount(product.id, -1)


def test_resolve_discount_tie_on_threshold_prefers_larger_discount(db_session, factory):
    vendor = factory.vendor()
    product = factory.product(vendor)
    factory.tier(product, 1, 4, "5")
    factory.tier(product, 2, 4, "12")
    service = DiscountCatalogService(db_session)

    assert service.resolve_discount(product.id, 4) == Decimal("12")


def test_next_tier_reports_members_still_needed(catalog):
    _, product, service = catalog
    upcoming = service.next_tier(product.id, 4)
    assert upcoming.tier_number == 2
    assert service.next_tier(product.id, 6) is None


def test_vendor_can_add_and_update_tiers(catalog, db_session):
    vendor, product, service = catalog

    service.upsert_tier(vendor.id, product.id, 3, 10, "30")
    service.upsert_tier(vendor.id, product.id, 1, 3, "12.5")

    tiers = service.list_tiers(product.id)
    assert [(t.tier_number, t.members_required, Decimal(t.discount_percentage)) for t in tiers] == [
        (1, 3, Decimal("12.5")),
        (2, 6, Decimal("20")),
        (3, 10, Decimal("30")),
    ]


def test_non_vendor_cannot_manage_tiers(catalog, factory):
    _, product, service = catalog
    stranger = factory.user()

    with pytest.raises(AuthorizationError):
        service.upsert_tier(stranger.id, product.id, 3, 10, "30")
    with pytest.raises(AuthorizationError):
        service.delete_tier(stranger.id, product.id, 1)


def test_upsert_rejects_tier_that_lowers_discount_for_more_members(catalog, db_session):
    vendor, product, service = catalog

    with pytest.raises(ValidationError):
        service.upsert_tier(vendor.id, product.id, 3, 10, "15")

    assert db_session.query(DiscountTier).filter_by(product_id=product.id).count() == 2


def test_upsert_validates_ranges(catalog):
    vendor, product, service = catalog

    with pytest.raises(ValidationError):
        service.upsert_tier(vendor.id, product.id, 3, 0, "30")
    with pytest.raises(ValidationError):
        service.upsert_tier(vendor.id, product.id, 3, 10, "101")
    with pytest.raises(ValidationError):
        service.upsert_tier(vendor.id, product.id, 0, 10, "30")


def test_delete_tier(catalog):
    vendor, product, service = catalog

    service.delete_tier(vendor.id, product.id, 2)

    assert [t.tier_number for t in service.list_tiers(product.id)] == [1]
    assert service.resolve_discount(product.id, 10) == Decimal("10")
    with pytest.raises(NotFoundError):
        service.delete_tier(vendor.id, product.id, 2)

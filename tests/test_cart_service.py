import pytest

from groupbuy.errors import NotFoundError, ValidationError
from groupbuy.models import CartItem
from groupbuy.services.cart_service import CartService


def test_add_to_cart_upserts_per_product(db_session, factory):
    user = factory.user()
    product = factory.product(factory.vendor())
    service = CartService(db_session)

    service.add_to_cart(user.id, product.id, 2)
    item = service.add_to_cart(user.id, product.id)

    assert item.quantity == 3
    assert db_session.query(CartItem).filter_by(user_id=user.id).count() == 1


def test_set_quantity_zero_removes_row(db_session, factory):
    user = factory.user()
    product = factory.product(factory.vendor())
    service = CartService(db_session)
    service.add_to_cart(user.id, product.id, 2)

    assert service.set_quantity(user.id, product.id, 5).quantity == 5
    assert service.set_quantity(user.id, product.id, 0) is None
    assert service.list_cart(user.id) == []


def test_list_cart_filters_by_vendor(db_session, factory):
    user = factory.user()
    vendor = factory.vendor()
    mine = factory.product(vendor)
    other = factory.product(factory.vendor())
    service = CartService(db_session)
    service.add_to_cart(user.id, mine.id)
    service.add_to_cart(user.id, other.id)

    assert [i.product_id for i in service.list_cart(user.id, vendor_id=vendor.id)] == [mine.id]


def test_inactive_products_and_bad_quantities_are_rejected(db_session, factory):
    user = factory.user()
    inactive = factory.product(factory.vendor(), is_active=False)
    service = CartService(db_session)

    with pytest.raises(NotFoundError):
        service.add_to_cart(user.id, inactive.id)
    with pytest.raises(ValidationError):
        service.add_to_cart(user.id, inactive.id, 0)

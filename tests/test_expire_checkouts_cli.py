from datetime import datetime, timedelta, timezone

from conftest import FakePaymentGateway, TestConfig

from groupbuy.models import CheckoutSession, CheckoutSessionStatus
from groupbuy.services.checkout_service import CheckoutService


def test_expire_checkouts_command_cancels_overdue_sessions(app, db_session, factory):
    product = factory.product(factory.vendor())
    admin = factory.user()
    group = factory.group(admin, product)
    factory.cart(admin, product, 1)
    service = CheckoutService(db_session, payment_gateway=FakePaymentGateway(), config=TestConfig)
    stale = service.open_checkout_session(
        group.id, admin.id, now=datetime.now(timezone.utc) - timedelta(hours=25)
    )

    result = app.test_cli_runner().invoke(args=["expire-checkouts"])

    assert "Expired 1 checkout session(s)" in result.output
    db_session.expire_all()
    session = db_session.get(CheckoutSession, stale.id)
    assert session.status == CheckoutSessionStatus.CANCELLED
    assert session.cancel_reason == "expired"

# tests/conftest.py
"""
Shared fixtures: an in-memory database per test, model factories, and a
payment gateway double that keeps the real webhook signature check.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from groupbuy.config import Config
from groupbuy.database import Base, build_engine
from groupbuy.errors import ExternalServiceError
from groupbuy.models import (
    CartItem,
    DiscountTier,
    Group,
    GroupMembership,
    Product,
    User,
    UserRole,
)
from groupbuy.money import to_minor_units
from groupbuy.observability.metrics import reset_metrics
from groupbuy.services.payment_gateway import PaymentIntentResult, StripePaymentGateway

WEBHOOK_SECRET = "whsec_test_secret"


class TestConfig(Config):
    __test__ = False

    TESTING = True
    STRUCTURED_LOGS_ENABLED = False
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    CHECKOUT_SESSION_TTL_HOURS = 24
    DEFAULT_GROUP_MEMBER_LIMIT = 50


class FakePaymentGateway(StripePaymentGateway):
    """Records intent requests instead of calling Stripe; webhook verification is inherited."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET, should_fail: bool = False):
        super().__init__(
            api_key="sk_test_dummy",
            webhook_secret=webhook_secret,
            client=object(),
        )
        self.should_fail = should_fail
        self.calls: List[Dict[str, Any]] = []
        self._by_idempotency_key: Dict[str, PaymentIntentResult] = {}

    def create_payment_intent(
        self,
        amount,
        currency,
        metadata=None,
        idempotency_key=None,
        description=None,
    ) -> PaymentIntentResult:
        self.calls.append(
            {
                "amount": to_minor_units(amount),
                "currency": currency,
                "metadata": dict(metadata or {}),
                "idempotency_key": idempotency_key,
            }
        )
        if self.should_fail:
            raise ExternalServiceError("Card processor unavailable")
        if idempotency_key and idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]
        intent_id = f"pi_test_{len(self.calls)}"
        result = PaymentIntentResult(client_secret=f"{intent_id}_secret_abc", payment_intent_id=intent_id)
        if idempotency_key:
            self._by_idempotency_key[idempotency_key] = result
        return result


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_intent_event(
    event_type: str,
    intent_id: str,
    line_item_id: Optional[int] = None,
    event_id: Optional[str] = None,
    amount: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Dict[str, Any]:
    intent: Dict[str, Any] = {"id": intent_id, "object": "payment_intent", "metadata": {}}
    if line_item_id is not None:
        intent["metadata"]["line_item_id"] = str(line_item_id)
    if user_id is not None:
        intent["metadata"]["user_id"] = str(user_id)
    if amount is not None:
        intent["amount"] = amount
        intent["amount_received"] = amount if event_type == "payment_intent.succeeded" else 0
    if event_type == "payment_intent.payment_failed":
        intent["last_payment_error"] = {"message": "Your card was declined."}
    return {
        "id": event_id or f"evt_{intent_id}_{event_type.rsplit('.', 1)[-1]}",
        "type": event_type,
        "data": {"object": intent},
    }


class Factory:
    def __init__(self, db_session):
        self.db = db_session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, role: UserRole = UserRole.USER, email: Optional[str] = None) -> User:
        n = self._next()
        user = User(email=email or f"user{n}@example.com", full_name=f"User {n}", role=role)
        self.db.add(user)
        self.db.commit()
        return user

    def vendor(self) -> User:
        return self.user(role=UserRole.VENDOR)

    def product(
        self,
        vendor: User,
        price: str = "50.00",
        is_active: bool = True,
        group_order_enabled: bool = True,
        name: Optional[str] = None,
    ) -> Product:
        product = Product(
            vendor_id=vendor.id,
            name=name or f"Product {self._next()}",
            price=Decimal(price),
            is_active=is_active,
            group_order_enabled=group_order_enabled,
        )
        self.db.add(product)
        self.db.commit()
        return product

    def tier(self, product: Product, tier_number: int, members_required: int, discount: str) -> DiscountTier:
        tier = DiscountTier(
            product_id=product.id,
            tier_number=tier_number,
            members_required=members_required,
            discount_percentage=Decimal(discount),
        )
        self.db.add(tier)
        self.db.commit()
        return tier

    def group(
        self,
        creator: User,
        product: Optional[Product] = None,
        is_private: bool = False,
        member_limit: int = 50,
    ) -> Group:
        group = Group(
            creator_id=creator.id,
            product_id=product.id if product else None,
            name=f"Group {self._next()}",
            is_private=is_private,
            member_limit=member_limit,
        )
        self.db.add(group)
        self.db.flush()
        self.db.add(GroupMembership(group_id=group.id, user_id=creator.id))
        self.db.commit()
        return group

    def member(self, group: Group, user: Optional[User] = None) -> User:
        user = user or self.user()
        self.db.add(GroupMembership(group_id=group.id, user_id=user.id))
        self.db.commit()
        return user

    def cart(self, user: User, product: Product, quantity: int = 1) -> CartItem:
        item = CartItem(user_id=user.id, product_id=product.id, quantity=quantity)
        self.db.add(item)
        self.db.commit()
        return item


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def engine():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(engine):
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def fake_gateway():
    return FakePaymentGateway()


@pytest.fixture
def app(engine, fake_gateway):
    from groupbuy.main import create_app

    return create_app(config=TestConfig, engine=engine, payment_gateway=fake_gateway)


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


def login(client, user_id: int) -> None:
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def post_webhook(client, event: Dict[str, Any], secret: str = WEBHOOK_SECRET, header: Optional[str] = None):
    payload = json.dumps(event)
    signature = sign_payload(payload, secret) if header is None else header
    return client.post(
        "/stripe-webhook",
        data=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )

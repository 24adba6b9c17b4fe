from __future__ import annotations

from conftest import login, make_intent_event, post_webhook

from groupbuy.models import CheckoutLineItem, PaymentStatus, PaymentWebhookEvent, UserRole


def _seed_group_order(factory):
    vendor = factory.vendor()
    product = factory.product(vendor, price="50.00")
    factory.tier(product, 1, 3, "10")
    admin = factory.user()
    group = factory.group(admin, product)
    alice = factory.member(group)
    factory.member(group)
    factory.cart(alice, product, 2)
    return vendor, product, group, admin, alice


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "UP"


def test_requests_without_user_are_rejected(client):
    response = client.post("/api/groups", json={"name": "Anon"})
    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "not_authenticated"


def test_metrics_endpoint_requires_admin_role(client, factory):
    login(client, factory.user().id)
    assert client.get("/admin/metrics").status_code == 403

    login(client, factory.user(role=UserRole.ADMIN).id)
    response = client.get("/admin/metrics")
    assert response.status_code == 200
    assert "counters" in response.get_json()


def test_discount_lookup_reports_next_tier(client, factory):
    product = factory.product(factory.vendor())
    factory.tier(product, 1, 3, "10")
    factory.tier(product, 2, 6, "20")

    body = client.get(f"/api/products/{product.id}/discount?members=4").get_json()

    assert body["discount_percentage"] == "10.00"
    assert body["next_tier"]["members_needed"] == 2


def test_vendor_manages_tiers_over_http(client, factory):
    vendor = factory.vendor()
    product = factory.product(vendor)
    login(client, vendor.id)

    response = client.put(
        f"/api/products/{product.id}/discount-tiers/1",
        json={"members_required": 5, "discount_percentage": "15"},
    )
    assert response.status_code == 200

    bad = client.put(
        f"/api/products/{product.id}/discount-tiers/2",
        json={"members_required": 10, "discount_percentage": "5"},
    )
    assert bad.status_code == 400

    tiers = client.get(f"/api/products/{product.id}/discount-tiers").get_json()["tiers"]
    assert tiers == [{"tier_number": 1, "members_required": 5, "discount_percentage": "15.00"}]


def test_group_creation_and_public_join(client, factory):
    creator = factory.user()
    product = factory.product(factory.vendor())
    login(client, creator.id)

    created = client.post("/api/groups", json={"name": "Coffee club", "product_id": product.id, "is_private": False})
    assert created.status_code == 201
    group = created.get_json()["group"]
    assert group["member_count"] == 1

    login(client, factory.user().id)
    joined = client.post(f"/api/groups/{group['id']}/join", json={})
    assert joined.status_code == 201
    assert joined.get_json()["status"] == "joined"


def test_full_group_checkout_flow(client, factory, fake_gateway, db_session):
    _, _, group, admin, alice = _seed_group_order(factory)

    login(client, admin.id)
    opened = client.post(f"/api/groups/{group.id}/checkout-sessions")
    assert opened.status_code == 201
    session_body = opened.get_json()["checkout_session"]
    assert session_body["discount_percentage"] == "10.00"
    assert session_body["total_amount"] == "90.00"
    item_id = session_body["line_items"][0]["id"]

    again = client.post(f"/api/groups/{group.id}/checkout-sessions")
    assert again.status_code == 409

    notified = client.post(f"/api/checkout-sessions/{session_body['id']}/notify")
    assert notified.get_json()["notified_user_ids"] == [alice.id]

    login(client, alice.id)
    notes = client.get("/api/notifications").get_json()
    assert notes["unread_count"] == 1

    assert client.put(
        f"/api/checkout-items/{item_id}/shipping-address", json={"shipping_address": "1 Main St"}
    ).status_code == 200
    paid = client.post(f"/api/checkout-items/{item_id}/pay")
    assert paid.status_code == 200
    intent_id = paid.get_json()["paymentIntentId"]
    assert fake_gateway.calls[0]["amount"] == 9000

    webhook = post_webhook(client, make_intent_event("payment_intent.succeeded", intent_id, item_id, amount=9000))
    assert webhook.status_code == 200
    assert webhook.get_json() == {"received": True, "outcome": "paid"}

    current = client.get(f"/api/groups/{group.id}/checkout-sessions/current").get_json()["checkout_session"]
    assert current["status"] == "completed"
    assert current["line_items"][0]["payment_status"] == "paid"


def test_member_cannot_pay_someone_elses_item(client, factory, fake_gateway):
    _, _, group, admin, _ = _seed_group_order(factory)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]

    response = client.post(f"/api/checkout-items/{item_id}/pay")

    assert response.status_code == 403
    assert fake_gateway.calls == []


def test_create_payment_intent_checks_amount_against_line_item(client, factory):
    _, _, group, admin, alice = _seed_group_order(factory)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]
    login(client, alice.id)
    client.put(f"/api/checkout-items/{item_id}/shipping-address", json={"shipping_address": "1 Main St"})

    mismatch = client.post(
        "/create-payment-intent",
        json={"amount": 50, "currency": "usd", "metadata": {"line_item_id": item_id}},
    )
    assert mismatch.status_code == 400

    ok = client.post(
        "/create-payment-intent",
        json={"amount": "90.00", "currency": "usd", "metadata": {"line_item_id": item_id}},
    )
    assert ok.status_code == 200
    assert set(ok.get_json()) == {"clientSecret", "paymentIntentId"}


def test_processor_outage_maps_to_bad_gateway(client, factory, fake_gateway, db_session):
    _, _, group, admin, alice = _seed_group_order(factory)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]
    login(client, alice.id)
    client.put(f"/api/checkout-items/{item_id}/shipping-address", json={"shipping_address": "1 Main St"})
    fake_gateway.should_fail = True

    response = client.post(f"/api/checkout-items/{item_id}/pay")

    assert response.status_code == 502
    db_session.expire_all()
    assert db_session.get(CheckoutLineItem, item_id).payment_reference is None


def test_webhook_with_bad_signature_changes_nothing(client, factory, db_session):
    _, _, group, admin, _ = _seed_group_order(factory)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]
    event = make_intent_event("payment_intent.succeeded", "pi_forged", item_id)

    forged = post_webhook(client, event, secret="whsec_attacker")
    missing = post_webhook(client, event, header="")

    assert forged.status_code == 400
    assert forged.get_json()["error"]["code"] == "invalid_signature"
    assert missing.status_code == 400
    db_session.expire_all()
    assert db_session.get(CheckoutLineItem, item_id).payment_status == PaymentStatus.PENDING
    assert db_session.query(PaymentWebhookEvent).count() == 0


def test_webhook_replay_is_acknowledged(client, factory):
    _, _, group, admin, alice = _seed_group_order(factory)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]
    event = make_intent_event("payment_intent.succeeded", "pi_x", item_id, amount=9000, user_id=alice.id)

    first = post_webhook(client, event)
    second = post_webhook(client, event)

    assert first.get_json()["outcome"] == "paid"
    assert second.status_code == 200
    assert second.get_json()["outcome"] == "duplicate"


def test_intent_naming_a_line_item_is_always_owner_checked(client, factory, fake_gateway, db_session):
    _, _, group, admin, alice = _seed_group_order(factory)
    mallory = factory.member(group)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]

    login(client, mallory.id)
    aliased = client.post(
        "/create-payment-intent",
        json={"amount": "0.50", "metadata": {"line_item_id": None, "checkout_item_id": item_id}},
    )
    unnamed = client.post(
        "/create-payment-intent",
        json={"amount": "0.50", "metadata": {"line_item_id": None}},
    )

    assert aliased.status_code == 403
    assert unnamed.status_code == 400
    assert fake_gateway.calls == []


def test_webhook_from_another_members_intent_leaves_item_unpaid(client, factory, fake_gateway, db_session):
    _, _, group, admin, _ = _seed_group_order(factory)
    mallory = factory.member(group)
    login(client, admin.id)
    item_id = client.post(f"/api/groups/{group.id}/checkout-sessions").get_json()["checkout_session"]["line_items"][0]["id"]
    login(client, mallory.id)
    intent_id = client.post("/create-payment-intent", json={"amount": "0.50", "metadata": {}}).get_json()["paymentIntentId"]
    assert fake_gateway.calls[0]["metadata"] == {"user_id": mallory.id}

    event = make_intent_event("payment_intent.succeeded", intent_id, item_id, amount=50, user_id=mallory.id)
    response = post_webhook(client, event)

    assert response.get_json() == {"received": True, "outcome": "rejected"}
    db_session.expire_all()
    assert db_session.get(CheckoutLineItem, item_id).payment_status == PaymentStatus.PENDING

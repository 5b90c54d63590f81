import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_gateway_lookup, get_notifier, get_uow_factory, ip_allowed
from core.config import settings
from core.settings import payment_settings
from domain.payment.entity import OrderStatus, PaymentStatus, ProviderKind
from domain.payment.exceptions import UnsupportedProviderException
from main import app
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode
from tests.fakes import FAILED, SUCCEEDED, ScriptedGateway, completed_event, make_payment


@pytest.fixture
def gateways():
    return {}


@pytest.fixture
def client(uow_factory, notifier, gateways):
    def lookup(kind):
        try:
            return gateways[ProviderKind(kind)]
        except KeyError:
            raise UnsupportedProviderException(str(kind))

    app.dependency_overrides[get_uow_factory] = lambda: uow_factory
    app.dependency_overrides[get_gateway_lookup] = lambda: lookup
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers["X-Request-ID"]


def test_webhook_settles_payment(client, store, gateways):
    payment = store.seed_payment(make_payment())
    store.seed_order("order-1")
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS, callback=completed_event(payment))

    first = client.post("/api/v1/payments/webhooks/PAYOS", content=b"{}")
    second = client.post("/api/v1/payments/webhooks/payos", content=b"{}")

    assert first.status_code == 200
    assert first.json()["data"]["applied"] is True
    assert second.status_code == 200
    assert second.json()["message"] == "Already processed"
    assert store.orders["order-1"].status == OrderStatus.PAID


def test_webhook_rejections_carry_status(client, store, gateways):
    payment = store.seed_payment(make_payment())
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS)

    bad_signature = client.post("/api/v1/payments/webhooks/payos", content=b"{}")
    unknown = client.post("/api/v1/payments/webhooks/stripe", content=b"{}")

    assert bad_signature.status_code == 400
    assert bad_signature.json()["code"] == PaymentCode.SIGNATURE_ERROR
    assert unknown.status_code == 404
    assert unknown.json()["code"] == PaymentCode.PAYMENT_NOT_FOUND
    assert store.payments[payment.id].status == PaymentStatus.PENDING


def test_webhook_ip_allowlist(client, store, gateways, monkeypatch):
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["10.0.0.0/8"])

    resp = client.post(
        "/api/v1/payments/webhooks/payos",
        content=b"{}",
        headers={"X-Forwarded-For": "10.1.2.3"},
    )

    assert resp.status_code == 403
    assert resp.json()["code"] == BusinessCode.FORBIDDEN


def test_ip_allowed_matches_addresses_and_networks():
    assert ip_allowed("10.1.2.3", ["10.0.0.0/8"])
    assert ip_allowed("203.0.113.7", ["198.51.100.1", "203.0.113.7"])
    assert not ip_allowed("203.0.113.8", ["203.0.113.7", "not-an-ip"])
    assert not ip_allowed("testclient", ["10.0.0.0/8"])


def test_get_payment_and_missing_payment(client, store):
    payment = store.seed_payment(make_payment())

    found = client.get(f"/api/v1/payments/{payment.id}")
    missing = client.get("/api/v1/payments/does-not-exist")

    assert found.status_code == 200
    assert found.json()["data"]["status"] == "pending"
    assert found.json()["data"]["amount_original"] == "100000"
    assert missing.status_code == 404
    assert missing.json()["code"] == PaymentCode.PAYMENT_NOT_FOUND


def test_create_payment_returns_checkout(client, store, gateways):
    store.seed_order("order-1")
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS)

    resp = client.post(
        "/api/v1/payments",
        json={"provider": "payos", "user_id": "user-1", "amount": "100000", "currency": "VND", "order_id": "order-1"},
    )

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["status"] == "pending"
    assert data["checkout_url"].startswith("https://pay.example/")


def test_create_payment_validation_error(client):
    resp = client.post(
        "/api/v1/payments",
        json={"provider": "paypal", "user_id": "user-1", "amount": "10", "currency": "VND", "order_id": "o"},
    )

    assert resp.status_code == 422


class CapturingGateway(ScriptedGateway):
    async def capture_order(self, payment):
        return completed_event(payment, tx_reference="CAPTURE-9")


def test_capture_route_settles_payment(client, store, gateways):
    payment = store.seed_payment(
        make_payment(ProviderKind.PAYPAL, currency="USD", amount="20", provider_payment_id="ORDER-7")
    )
    store.seed_order("order-1")
    gateways[ProviderKind.PAYPAL] = CapturingGateway(ProviderKind.PAYPAL)

    resp = client.post(f"/api/v1/payments/{payment.id}/capture")

    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "completed"
    assert store.payments[payment.id].tx_reference == "CAPTURE-9"
    assert store.orders["order-1"].status == OrderStatus.PAID


def test_capture_route_rejects_rail_without_capture(client, store, gateways):
    payment = store.seed_payment(make_payment())
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS)

    resp = client.post(f"/api/v1/payments/{payment.id}/capture")

    assert resp.status_code == 404
    assert resp.json()["code"] == PaymentCode.UNSUPPORTED_PROVIDER
    assert store.payments[payment.id].status == PaymentStatus.PENDING


def test_refund_success_and_failure(client, store, gateways):
    ok = store.seed_payment(make_payment(status=PaymentStatus.COMPLETED))
    denied = store.seed_payment(
        make_payment(
            ProviderKind.PAYPAL,
            status=PaymentStatus.COMPLETED,
            currency="USD",
            amount="10",
            payment_id="22222222-2222-3333-4444-555555555555",
        )
    )
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS, refund_outcomes=[SUCCEEDED])
    gateways[ProviderKind.PAYPAL] = ScriptedGateway(ProviderKind.PAYPAL, refund_outcomes=[FAILED])

    success = client.post("/api/v1/payments/refunds", json={"payment_id": ok.id, "reason": "dup"})
    failure = client.post("/api/v1/payments/refunds", json={"payment_id": denied.id})

    assert success.status_code == 200
    assert success.json()["data"]["status"] == "refunded"
    assert success.json()["data"]["success"] is True
    assert failure.status_code == 502
    assert failure.json()["code"] == PaymentCode.PROVIDER_ERROR
    assert failure.json()["data"]["status"] == "completed"
    assert failure.json()["data"]["success"] is False


def test_refund_of_pending_payment_conflicts(client, store, gateways):
    payment = store.seed_payment(make_payment())
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS, refund_outcomes=[SUCCEEDED])

    resp = client.post("/api/v1/payments/refunds", json={"payment_id": payment.id})

    assert resp.status_code == 409
    assert resp.json()["code"] == PaymentCode.INVALID_PAYMENT_STATE
    assert gateways[ProviderKind.PAYOS].refund_calls == []


def test_refund_requires_internal_token(client, store, gateways, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_TOKEN", "s3cret")
    payment = store.seed_payment(make_payment(status=PaymentStatus.COMPLETED))
    gateways[ProviderKind.PAYOS] = ScriptedGateway(ProviderKind.PAYOS, refund_outcomes=[SUCCEEDED])

    denied = client.post("/api/v1/payments/refunds", json={"payment_id": payment.id})
    allowed = client.post(
        "/api/v1/payments/refunds",
        json={"payment_id": payment.id},
        headers={"X-Internal-Token": "s3cret"},
    )

    assert denied.status_code == 401
    assert denied.json()["code"] == BusinessCode.UNAUTHORIZED
    assert allowed.status_code == 200


def test_error_messages_follow_accept_language(client):
    resp = client.get("/api/v1/payments/missing", headers={"Accept-Language": "vi-VN,vi;q=0.9"})

    assert resp.status_code == 404
    assert resp.json()["error"]["locale"] == "vi"
    assert resp.json()["error"]["message_key"] == "payments.not_found"

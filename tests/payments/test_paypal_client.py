import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import EventOutcome, NormalizedEvent, ParseError, RefundOutcomeKind
from core.settings import PaymentSettings
from domain.payment.entity import PaymentStatus, ProviderKind
from infrastructure.external.payments.exceptions import ProviderRejectedError, ProviderUnavailableError
from infrastructure.external.payments.paypal_client import PayPalClient
from tests.fakes import make_payment


def _client(handler=None):
    settings = PaymentSettings(paypal={"client_id": "pp-id", "client_secret": "pp-secret"})
    return PayPalClient(settings, transport=httpx.MockTransport(handler) if handler else None)


def _capture_event(event_type, status="COMPLETED"):
    return json.dumps(
        {
            "event_type": event_type,
            "resource": {
                "id": "CAPTURE-9",
                "status": status,
                "custom_id": "pay-1",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-7"}},
            },
        }
    ).encode()


def test_capture_completed_carries_capture_reference():
    event = _client().parse_callback({}, _capture_event("PAYMENT.CAPTURE.COMPLETED"))

    assert isinstance(event, NormalizedEvent)
    assert event.outcome == EventOutcome.COMPLETED
    assert event.external_order_id == "pay-1"
    assert event.provider_payment_id == "ORDER-7"
    assert event.tx_reference == "CAPTURE-9"


def test_capture_denied_is_failure():
    event = _client().parse_callback({}, _capture_event("PAYMENT.CAPTURE.DENIED", status="DENIED"))

    assert event.outcome == EventOutcome.FAILED
    assert event.reason == "DENIED"


def test_order_approved_is_only_acknowledged():
    body = json.dumps(
        {
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {"id": "ORDER-7", "purchase_units": [{"reference_id": "pay-1"}]},
        }
    ).encode()

    event = _client().parse_callback({}, body)

    # approval moves no money; capture_order settles
    assert event.outcome == EventOutcome.PENDING
    assert event.external_order_id == "pay-1"
    assert event.provider_payment_id == "ORDER-7"
    assert event.tx_reference is None


def test_purchase_units_that_is_not_a_list_is_rejected_not_raised():
    body = json.dumps(
        {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"purchase_units": {"x": 1}}}
    ).encode()

    result = _client().parse_callback({}, body)

    assert isinstance(result, ParseError)
    assert result.reason == "missing_reference"


def test_purchase_units_with_non_dict_entries_falls_back_to_resource_id():
    body = json.dumps(
        {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-7", "purchase_units": ["pay-1"]}}
    ).encode()

    event = _client().parse_callback({}, body)

    assert isinstance(event, NormalizedEvent)
    assert event.external_order_id is None
    assert event.provider_payment_id == "ORDER-7"


def test_supplementary_data_that_is_a_string_is_ignored():
    body = json.dumps(
        {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAPTURE-9", "custom_id": "pay-1", "supplementary_data": "n/a"},
        }
    ).encode()

    event = _client().parse_callback({}, body)

    assert isinstance(event, NormalizedEvent)
    assert event.outcome == EventOutcome.COMPLETED
    assert event.external_order_id == "pay-1"
    assert event.provider_payment_id == "CAPTURE-9"
    assert event.tx_reference == "CAPTURE-9"


def test_unknown_event_type_is_pending_and_garbage_is_rejected():
    body = json.dumps({"event_type": "CUSTOMER.DISPUTE.CREATED", "resource": {"id": "D-1"}}).encode()
    assert _client().parse_callback({}, body).outcome == EventOutcome.PENDING

    result = _client().parse_callback({}, b"not json")
    assert isinstance(result, ParseError)
    assert result.reason == "invalid_json"


def _router(refund_status_code, refund_payload, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        if request.url.path == "/v2/checkout/orders":
            return httpx.Response(
                201,
                json={"id": "ORDER-7", "links": [{"rel": "approve", "href": "https://paypal.example/approve"}]},
            )
        return httpx.Response(refund_status_code, json=refund_payload)

    return handler


@pytest.mark.asyncio
async def test_create_order_returns_approve_link():
    seen = []
    client = _client(_router(200, {}, seen))

    intent = await client.create_payment(make_payment(ProviderKind.PAYPAL, currency="USD", amount="19.999"))
    await client.aclose()

    assert seen == ["/v1/oauth2/token", "/v2/checkout/orders"]
    assert intent.external_payment_id == "ORDER-7"
    assert intent.checkout_url == "https://paypal.example/approve"
    assert intent.amount_normalized == Decimal("20.00")


@pytest.mark.asyncio
async def test_refund_completed():
    seen = []
    client = _client(_router(201, {"id": "R-1", "status": "COMPLETED"}, seen))
    payment = make_payment(
        ProviderKind.PAYPAL, status=PaymentStatus.COMPLETED, currency="USD", amount="20", tx_reference="CAPTURE-9"
    )

    outcome = await client.refund(payment, "x")
    await client.aclose()

    assert outcome.kind == RefundOutcomeKind.SUCCEEDED
    assert seen[-1] == "/v2/payments/captures/CAPTURE-9/refund"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, payload",
    [
        (201, {"id": "R-1", "status": "PENDING"}),
        (422, {"name": "UNPROCESSABLE_ENTITY"}),
        (500, {"name": "INTERNAL_SERVER_ERROR"}),
    ],
)
async def test_refund_anything_else_is_failed_once(status_code, payload):
    seen = []
    client = _client(_router(status_code, payload, seen))
    payment = make_payment(
        ProviderKind.PAYPAL, status=PaymentStatus.COMPLETED, currency="USD", amount="20", tx_reference="CAPTURE-9"
    )

    outcome = await client.refund(payment, "x")
    await client.aclose()

    assert outcome.kind == RefundOutcomeKind.FAILED
    assert seen.count("/v2/payments/captures/CAPTURE-9/refund") == 1
    assert client.retry_policy.max_attempts == 1


def _capture_router(status_code, payload, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(status_code, json=payload)

    return handler


def _captured_order(capture_status="COMPLETED"):
    return {
        "id": "ORDER-7",
        "status": "COMPLETED" if capture_status == "COMPLETED" else "PAYER_ACTION_REQUIRED",
        "purchase_units": [
            {"reference_id": "pay-1", "payments": {"captures": [{"id": "CAPTURE-9", "status": capture_status}]}}
        ],
    }


def _approved_payment():
    return make_payment(ProviderKind.PAYPAL, currency="USD", amount="20", provider_payment_id="ORDER-7")


@pytest.mark.asyncio
async def test_capture_order_completed_carries_capture_id():
    seen = []
    client = _client(_capture_router(201, _captured_order(), seen))
    payment = _approved_payment()

    event = await client.capture_order(payment)
    await client.aclose()

    assert seen[-1] == "/v2/checkout/orders/ORDER-7/capture"
    assert event.outcome == EventOutcome.COMPLETED
    assert event.external_order_id == payment.id
    assert event.provider_payment_id == "ORDER-7"
    assert event.tx_reference == "CAPTURE-9"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "capture_status, outcome",
    [("DECLINED", EventOutcome.FAILED), ("PENDING", EventOutcome.PENDING)],
)
async def test_capture_order_status_mapping(capture_status, outcome):
    client = _client(_capture_router(201, _captured_order(capture_status), []))

    event = await client.capture_order(_approved_payment())
    await client.aclose()

    assert event.outcome == outcome
    if outcome == EventOutcome.FAILED:
        assert event.reason == "DECLINED"


@pytest.mark.asyncio
async def test_capture_refused_by_paypal_raises_rejection():
    payload = {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_NOT_APPROVED"}], "message": "not approved"}
    client = _client(_capture_router(422, payload, []))

    with pytest.raises(ProviderRejectedError) as exc_info:
        await client.capture_order(_approved_payment())
    await client.aclose()

    assert exc_info.value.details["provider_code"] == "ORDER_NOT_APPROVED"


@pytest.mark.asyncio
async def test_capture_server_error_is_unavailable():
    client = _client(_capture_router(503, {"name": "SERVICE_UNAVAILABLE"}, []))

    with pytest.raises(ProviderUnavailableError):
        await client.capture_order(_approved_payment())
    await client.aclose()


@pytest.mark.asyncio
async def test_capture_without_order_id_is_rejected_before_any_call():
    seen = []
    client = _client(_capture_router(201, _captured_order(), seen))

    with pytest.raises(ProviderRejectedError):
        await client.capture_order(make_payment(ProviderKind.PAYPAL, currency="USD", amount="20"))
    await client.aclose()

    assert seen == []

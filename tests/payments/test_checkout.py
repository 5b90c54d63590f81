from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import CreatePaymentCommand, PaymentIntent
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundOrchestrator
from application.services.settlement_service import SettlementProcessor
from core.settings import PaymentSettings
from domain.payment.entity import LedgerEntryKind, OrderStatus, PaymentStatus, PaymentType, ProviderKind
from domain.payment.exceptions import (
    InsufficientBalanceException,
    LedgerError,
    OrderNotFoundException,
    PaymentNotFoundException,
    UnsupportedProviderException,
)
from infrastructure.external.payments.balance_client import BalanceClient
from infrastructure.external.payments.exceptions import ProviderRejectedError
from infrastructure.external.payments.paypal_client import PayPalClient
from tests.fakes import InMemoryUnitOfWork, RecordingSleep, ScriptedGateway, make_payment


def _service(uow_factory, notifier, gateway):
    def gateway_for(kind):
        return gateway

    return PaymentService(uow_factory, gateway_for, SettlementProcessor(uow_factory, gateway_for, notifier))


def _command(provider=ProviderKind.PAYOS, **kwargs):
    values = dict(provider=provider, user_id="user-1", amount=Decimal("100000"), currency="VND", order_id="order-1")
    values.update(kwargs)
    return CreatePaymentCommand(**values)


@pytest.mark.asyncio
async def test_create_payment_stores_provider_intent(store, uow_factory, notifier):
    store.seed_order("order-1")
    intent = PaymentIntent(
        provider=ProviderKind.PAYOS,
        external_payment_id="123456789",
        checkout_url="https://pay.payos.vn/web/abc",
        qr_code="000201010212",
        amount_normalized=Decimal("100000"),
        settlement_currency="VND",
    )
    gw = ScriptedGateway(ProviderKind.PAYOS, intent=intent)
    service = _service(uow_factory, notifier, gw)

    payment = await service.create_payment(_command(description="Order #1"))

    assert payment.status == PaymentStatus.PENDING
    assert gw.created == [payment.id]
    assert payment.provider_payment_id == "123456789"
    assert payment.checkout_url == "https://pay.payos.vn/web/abc"
    assert payment.metadata["qr_code"] == "000201010212"
    assert payment.metadata["description"] == "Order #1"
    assert (await service.get_payment(payment.id)).id == payment.id


@pytest.mark.asyncio
async def test_create_payment_requires_existing_order(store, uow_factory, notifier):
    gw = ScriptedGateway(ProviderKind.PAYOS)
    service = _service(uow_factory, notifier, gw)

    with pytest.raises(OrderNotFoundException):
        await service.create_payment(_command(order_id="nope"))

    assert gw.created == []
    assert store.payments == {}


@pytest.mark.asyncio
async def test_provider_rejection_marks_payment_failed(store, uow_factory, notifier):
    store.seed_order("order-1")
    error = ProviderRejectedError("Amount below minimum", provider="payos", provider_code="20")
    gw = ScriptedGateway(ProviderKind.PAYOS, create_error=error)
    service = _service(uow_factory, notifier, gw)

    with pytest.raises(ProviderRejectedError):
        await service.create_payment(_command())

    [payment] = store.payments.values()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Amount below minimum"
    assert notifier.names() == ["payment.failed"]


@pytest.mark.asyncio
async def test_balance_checkout_debits_and_completes(store, uow_factory, notifier):
    store.seed_order("order-1")
    store.balances["user-1"] = Decimal("150000")
    service = _service(uow_factory, notifier, BalanceClient(uow_factory))

    payment = await service.create_payment(_command(ProviderKind.BALANCE))

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.tx_reference == "ledger:1"
    assert store.balances["user-1"] == Decimal("50000")
    [entry] = store.entries
    assert entry.kind == LedgerEntryKind.DEBIT
    assert entry.amount == Decimal("-100000")
    assert store.orders["order-1"].status == OrderStatus.PAID
    assert notifier.names() == ["payment.completed"]


@pytest.mark.asyncio
async def test_balance_checkout_with_insufficient_funds_fails(store, uow_factory, notifier):
    store.seed_order("order-1")
    store.balances["user-1"] = Decimal("1000")
    service = _service(uow_factory, notifier, BalanceClient(uow_factory))

    with pytest.raises(InsufficientBalanceException):
        await service.create_payment(_command(ProviderKind.BALANCE))

    [payment] = store.payments.values()
    assert payment.status == PaymentStatus.FAILED
    assert store.entries == []
    assert store.balances["user-1"] == Decimal("1000")
    assert store.orders["order-1"].status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_debit_failure_rolls_back_the_whole_checkout(store, uow_factory, notifier):
    # funds vanish between the pre-check and the debit
    store.seed_order("order-1")
    gw = ScriptedGateway(ProviderKind.BALANCE)
    service = _service(uow_factory, notifier, gw)

    with pytest.raises(LedgerError):
        await service.create_payment(_command(ProviderKind.BALANCE))

    [payment] = store.payments.values()
    assert payment.status == PaymentStatus.FAILED
    assert payment.expires_at is None
    assert store.entries == []
    assert store.orders["order-1"].status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_deposit_needs_no_order(store, uow_factory, notifier):
    gw = ScriptedGateway(ProviderKind.PAYOS)
    service = _service(uow_factory, notifier, gw)

    payment = await service.create_payment(_command(payment_type=PaymentType.DEPOSIT, order_id=None))

    assert payment.payment_type == PaymentType.DEPOSIT
    assert payment.order_id is None


@pytest.mark.asyncio
async def test_get_payment_unknown(uow_factory, notifier):
    service = _service(uow_factory, notifier, ScriptedGateway(ProviderKind.PAYOS))

    with pytest.raises(PaymentNotFoundException):
        await service.get_payment("missing")


def test_command_rejects_currency_the_rail_cannot_charge():
    with pytest.raises(ValueError):
        _command(ProviderKind.PAYPAL)
    with pytest.raises(ValueError):
        _command(ProviderKind.BALANCE, payment_type=PaymentType.DEPOSIT, order_id=None)


def _flaky_commit_factory(store, fail_on):
    commits = []

    class FlakyCommitUnitOfWork(InMemoryUnitOfWork):
        async def commit(self):
            commits.append(self)
            if len(commits) == fail_on:
                raise RuntimeError("connection reset during commit")
            await super().commit()

    def factory(*, readonly: bool = False):
        return FlakyCommitUnitOfWork(store, readonly=readonly)

    return factory


@pytest.mark.asyncio
async def test_balance_checkout_notifies_only_after_commit(store, notifier):
    store.seed_order("order-1")
    store.balances["user-1"] = Decimal("150000")
    # commit #1 stores the pending payment, commit #2 is the debit + settlement
    uow_factory = _flaky_commit_factory(store, fail_on=2)
    service = _service(uow_factory, notifier, BalanceClient(uow_factory))

    with pytest.raises(RuntimeError):
        await service.create_payment(_command(ProviderKind.BALANCE))

    assert "payment.completed" not in notifier.names()


def _paypal(seen, capture_payload, capture_status_code=201):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        if request.url.path.endswith("/capture"):
            return httpx.Response(capture_status_code, json=capture_payload)
        return httpx.Response(201, json={"id": "R-1", "status": "COMPLETED"})

    settings = PaymentSettings(paypal={"client_id": "pp-id", "client_secret": "pp-secret"})
    return PayPalClient(settings, transport=httpx.MockTransport(handler))


def _captured(status="COMPLETED"):
    return {
        "id": "ORDER-7",
        "status": status,
        "purchase_units": [{"payments": {"captures": [{"id": "CAPTURE-9", "status": status}]}}],
    }


@pytest.mark.asyncio
async def test_capture_settles_paypal_payment_and_refund_targets_capture(store, uow_factory, notifier):
    store.seed_order("order-1")
    payment = store.seed_payment(
        make_payment(ProviderKind.PAYPAL, currency="USD", amount="20", provider_payment_id="ORDER-7")
    )
    seen = []
    paypal = _paypal(seen, _captured())
    service = _service(uow_factory, notifier, paypal)

    captured = await service.capture_payment(payment.id)

    assert seen[-1] == "/v2/checkout/orders/ORDER-7/capture"
    assert captured.status == PaymentStatus.COMPLETED
    assert captured.tx_reference == "CAPTURE-9"
    assert store.orders["order-1"].status == OrderStatus.PAID
    assert notifier.names() == ["payment.completed"]

    # capturing again is a no-op
    assert (await service.capture_payment(payment.id)).status == PaymentStatus.COMPLETED
    assert seen.count("/v2/checkout/orders/ORDER-7/capture") == 1

    orchestrator = RefundOrchestrator(uow_factory, lambda kind: paypal, notifier, sleep=RecordingSleep())
    result = await orchestrator.refund(payment.id, "changed mind")
    await paypal.aclose()

    assert result.success is True
    assert seen[-1] == "/v2/payments/captures/CAPTURE-9/refund"
    assert store.payments[payment.id].status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_pending_capture_leaves_payment_pending(store, uow_factory, notifier):
    store.seed_order("order-1")
    payment = store.seed_payment(
        make_payment(ProviderKind.PAYPAL, currency="USD", amount="20", provider_payment_id="ORDER-7")
    )
    paypal = _paypal([], _captured("PENDING"))
    service = _service(uow_factory, notifier, paypal)

    result = await service.capture_payment(payment.id)
    await paypal.aclose()

    assert result.status == PaymentStatus.PENDING
    assert store.orders["order-1"].status == OrderStatus.PENDING
    assert notifier.events == []


@pytest.mark.asyncio
async def test_refused_capture_keeps_payment_pending(store, uow_factory, notifier):
    payment = store.seed_payment(
        make_payment(ProviderKind.PAYPAL, currency="USD", amount="20", provider_payment_id="ORDER-7")
    )
    paypal = _paypal([], {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSTRUMENT_DECLINED"}]}, 422)
    service = _service(uow_factory, notifier, paypal)

    with pytest.raises(ProviderRejectedError):
        await service.capture_payment(payment.id)
    await paypal.aclose()

    assert store.payments[payment.id].status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_capture_on_rail_without_capture_step(store, uow_factory, notifier):
    payment = store.seed_payment(make_payment(ProviderKind.PAYOS))
    service = _service(uow_factory, notifier, ScriptedGateway(ProviderKind.PAYOS))

    with pytest.raises(UnsupportedProviderException):
        await service.capture_payment(payment.id)

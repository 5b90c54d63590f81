import json

import httpx
import pytest

from core.settings import PaymentSettings
from domain.payment.events import AmountMismatchDetected
from infrastructure.external.notifications import DiscordNotifier, LoggingNotifier, build_notifier


@pytest.mark.asyncio
async def test_discord_embed_for_security_alert():
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = DiscordNotifier("https://discord.example/hook", transport=httpx.MockTransport(handler))
    event = AmountMismatchDetected(payment_id="pay-1", provider="payos", expected="100000", received="1000")

    await notifier.notify(event.name, event.to_payload())

    [embed] = posted[0]["embeds"]
    assert embed["title"] == "SECURITY ALERT: amount mismatch"
    assert embed["color"] == 0xFF0000
    names = {f["name"] for f in embed["fields"]}
    assert {"payment_id", "expected", "received"} <= names
    assert "event_id" not in names


@pytest.mark.asyncio
async def test_discord_errors_propagate_to_caller():
    notifier = DiscordNotifier(
        "https://discord.example/hook", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify("payment.completed", {"payment_id": "pay-1"})


def test_build_notifier_picks_channel():
    assert isinstance(build_notifier(PaymentSettings()), LoggingNotifier)
    configured = PaymentSettings(notifier={"discord_webhook_url": "https://discord.example/hook"})
    assert isinstance(build_notifier(configured), DiscordNotifier)

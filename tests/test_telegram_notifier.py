from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import requests

from reconciler import PaymentEvent
from telegram_notifier import TelegramNotifier

EVENT = PaymentEvent(
    order_id="3f2504e0-4f89-11d3-9a0c-0305e82c3301",
    paid_at=datetime(2026, 1, 1, 12, 5),
    amount=Decimal("12.50"),
    payment_method="Bakong",
    reference="md5",
)


def test_unconfigured_notifier_does_nothing():
    session = MagicMock()
    notifier = TelegramNotifier("", "12345", session=session)
    notifier(EVENT)
    assert notifier.enabled is False
    session.post.assert_not_called()


def test_placeholder_token_counts_as_unconfigured():
    assert TelegramNotifier("YOUR_BOT_TOKEN", "12345").enabled is False


def test_sends_paid_order_message():
    session = MagicMock()
    notifier = TelegramNotifier("123:abc", "12345", session=session)

    notifier(EVENT)

    url = session.post.call_args.args[0]
    data = session.post.call_args.kwargs["data"]
    assert url == "https://api.telegram.org/bot123:abc/sendMessage"
    assert data["chat_id"] == "12345"
    assert "3f2504e0-4f89-11d3-9a0c-0305e82c3301" in data["text"]
    assert "12.50" in data["text"]


def test_send_failure_is_logged_not_raised(caplog):
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("no route")
    notifier = TelegramNotifier("123:abc", "12345", session=session)

    assert notifier.send("hello") is False
    assert "Failed to send notification" in caplog.text

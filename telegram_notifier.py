import logging

import requests

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Posts a Bot API message for every paid order."""

    def __init__(self, bot_token, chat_id, timeout=10, session=None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session=None):
        return cls(settings.bot_token, settings.telegram_chat_id, settings.gateway_timeout, session)

    @property
    def enabled(self):
        if not self.bot_token or self.bot_token.lower() in ("your_bot_token", "none"):
            return False
        return bool(self.chat_id)

    def send(self, message):
        if not self.enabled:
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            response = self.session.post(url, data={"chat_id": self.chat_id, "text": message}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Failed to send notification: %s", e)
            return False
        return True

    def __call__(self, event):
        self.send(
            f"✅ Order {event.order_id} paid\n"
            f"Amount: {event.amount} via {event.payment_method}\n"
            f"Paid at: {event.paid_at:%Y-%m-%d %H:%M:%S} UTC"
        )

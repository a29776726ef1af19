import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./genzstore.db"

    # KHQR merchant (Tag 29 / 59 / 60)
    khqr_scheme_guid: str = "bakong"
    khqr_merchant_id: str = ""
    khqr_merchant_name: str = "GenZStore"
    khqr_merchant_city: str = "Phnom Penh"
    khqr_currency_code: str = "840"  # 840=USD, 116=KHR
    khqr_expiry_minutes: int = 10

    # Bakong Open API
    bakong_api_url: str = "https://api-bakong.nbc.gov.kh"
    bakong_api_token: str = ""

    # ABA PayWay
    payway_base_url: str = "https://checkout-sandbox.payway.com.kh/api/payment-gateway/v1/payments/purchase"
    payway_check_url: str = "https://checkout-sandbox.payway.com.kh/api/payment-gateway/v1/payments/check-transaction-2"
    payway_merchant_id: str = ""
    payway_api_key: str = ""
    payway_return_url: str = ""

    gateway_timeout: float = 15.0
    poll_interval: float = 5.0
    poll_timeout: float = 180.0

    # Bot API (paid order notifications)
    bot_token: str = ""
    telegram_chat_id: str = ""

    log_level: str = "INFO"


def _env(name, default=""):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def load_settings():
    """Builds settings from the environment (and .env, if present)."""
    return Settings(
        database_url=_env("DATABASE_URL", Settings.database_url),
        khqr_scheme_guid=_env("KHQR_SCHEME_GUID", Settings.khqr_scheme_guid),
        khqr_merchant_id=_env("KHQR_MERCHANT_ID"),
        khqr_merchant_name=_env("KHQR_MERCHANT_NAME", Settings.khqr_merchant_name),
        khqr_merchant_city=_env("KHQR_MERCHANT_CITY", Settings.khqr_merchant_city),
        khqr_currency_code=_env("KHQR_CURRENCY_CODE", Settings.khqr_currency_code),
        khqr_expiry_minutes=int(_env("KHQR_EXPIRY_MINUTES", str(Settings.khqr_expiry_minutes))),
        bakong_api_url=_env("BAKONG_API_URL", Settings.bakong_api_url).rstrip("/"),
        bakong_api_token=_env("BAKONG_API_TOKEN"),
        payway_base_url=_env("PAYWAY_BASE_URL", Settings.payway_base_url),
        payway_check_url=_env("PAYWAY_CHECK_URL", Settings.payway_check_url),
        payway_merchant_id=_env("PAYWAY_MERCHANT_ID"),
        payway_api_key=_env("PAYWAY_API_KEY"),
        payway_return_url=_env("PAYWAY_RETURN_URL"),
        gateway_timeout=float(_env("GATEWAY_TIMEOUT", str(Settings.gateway_timeout))),
        poll_interval=float(_env("POLL_INTERVAL", str(Settings.poll_interval))),
        poll_timeout=float(_env("POLL_TIMEOUT", str(Settings.poll_timeout))),
        bot_token=_env("BOT_TOKEN"),
        telegram_chat_id=_env("TELEGRAM_CHAT_ID"),
        log_level=_env("LOG_LEVEL", Settings.log_level).upper(),
    )


@lru_cache()
def get_settings():
    return load_settings()

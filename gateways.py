"""
Payment gateway clients.

Two providers settle KHQR payments for the store:
- Bakong Open API, looked up by the MD5 of the exact KHQR string we issued
- ABA PayWay, which issues its own KHQR and is looked up by a 20 char tran_id

Responses are validated against pydantic models so a missing field fails
here, at deserialization, and not somewhere downstream.
"""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from exceptions import GatewayError, GatewayUnreachable, InvalidSignature
from khqr_utils import format_amount, order_reference

logger = logging.getLogger(__name__)

CURRENCIES = {"840": "USD", "116": "KHR"}

# "APPROVED" or "PRE-AUTH" counts as paid
PAYWAY_PAID_STATUSES = {"APPROVED", "PRE-AUTH"}
CALLBACK_PAID_STATUSES = {"0", "00", "SUCCESS", "APPROVED"}


class BakongCheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response_code: int = Field(alias="responseCode")
    response_message: Optional[str] = Field(default=None, alias="responseMessage")
    error_code: Optional[int] = Field(default=None, alias="errorCode")
    data: Optional[dict] = None


class PayWayStatus(BaseModel):
    code: str
    message: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def _normalize_code(cls, value):
        return str(value).strip().zfill(2)


class PayWayPurchaseResponse(BaseModel):
    status: PayWayStatus
    qr_string: Optional[str] = None
    abapay_deeplink: Optional[str] = None
    checkout_qr_url: Optional[str] = None


class PayWayTransactionData(BaseModel):
    payment_status: Optional[str] = None


class PayWayCheckResponse(BaseModel):
    status: PayWayStatus
    data: Optional[PayWayTransactionData] = None


class PaymentCallback(BaseModel):
    """Pushback body posted by the gateway once a payment settles."""

    tran_id: str
    status: Union[int, str]
    hash: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def is_success(self):
        return str(self.status).strip().upper() in CALLBACK_PAID_STATUSES


@dataclass(frozen=True)
class PayWayCheckout:
    tran_id: str
    qr_string: str
    deeplink: Optional[str]
    checkout_url: Optional[str]


def _send(session, method, url, schema, timeout, **kwargs):
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise GatewayUnreachable(str(e)) from e

    if response.status_code >= 500:
        raise GatewayUnreachable(f"HTTP {response.status_code} from {url}")
    if response.status_code in (401, 403):
        raise GatewayError("AUTH_ERROR", f"HTTP {response.status_code} from {url}")
    if response.status_code >= 400:
        raise GatewayError(f"HTTP_{response.status_code}", response.text[:200])

    try:
        return schema.model_validate_json(response.content)
    except ValidationError as e:
        raise GatewayError("BAD_RESPONSE", str(e)) from e


class BakongClient:
    name = "Bakong"

    def __init__(self, api_url, api_token, timeout=15.0, session=None):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()
        if not api_token:
            logger.warning("BAKONG_API_TOKEN not configured, status checks will be rejected")

    @classmethod
    def from_settings(cls, settings, session=None):
        return cls(settings.bakong_api_url, settings.bakong_api_token, settings.gateway_timeout, session)

    def check_transaction(self, md5):
        return _send(
            self.session,
            "POST",
            f"{self.api_url}/v1/check_transaction_by_md5",
            BakongCheckResponse,
            self.timeout,
            json={"md5": md5},
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
        )

    def is_paid(self, reference):
        result = self.check_transaction(reference)
        logger.debug("[Bakong Check] %s -> %s %s", reference, result.response_code, result.response_message)
        return result.response_code == 0


class PayWayClient:
    name = "ABA"

    def __init__(self, merchant_id, api_key, purchase_url, check_url, return_url="", timeout=15.0, session=None):
        self.merchant_id = merchant_id
        self.api_key = api_key
        self.purchase_url = purchase_url
        self.check_url = check_url
        self.return_url = return_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session=None):
        return cls(
            merchant_id=settings.payway_merchant_id,
            api_key=settings.payway_api_key,
            purchase_url=settings.payway_base_url,
            check_url=settings.payway_check_url,
            return_url=settings.payway_return_url,
            timeout=settings.gateway_timeout,
            session=session,
        )

    @staticmethod
    def transaction_id(order_id):
        return order_reference(order_id)

    def sign(self, *parts):
        digest = hmac.new(
            self.api_key.encode("utf-8"),
            "".join(parts).encode("utf-8"),
            hashlib.sha512,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def create_transaction(self, order_id, amount, currency_code="840",
                           first_name="GenZ", last_name="Customer",
                           email="customer@example.com", phone="099999999"):
        tran_id = self.transaction_id(order_id)
        amount = format_amount(amount)
        items = json.dumps(
            [{"name": f"Order {tran_id}", "quantity": "1", "price": amount}],
            separators=(",", ":"),
        )
        # Field order here is the signing order
        fields = {
            "req_time": datetime.utcnow().strftime("%Y%m%d%H%M%S"),
            "merchant_id": self.merchant_id,
            "tran_id": tran_id,
            "amount": amount,
            "items": base64.b64encode(items.encode("utf-8")).decode("ascii"),
            "shipping": "0.00",
            "firstname": first_name,
            "lastname": last_name,
            "email": email,
            "phone": phone,
            "type": "purchase",
            "payment_option": "abapay_khqr_deeplink",
            "return_url": base64.b64encode(self.return_url.encode("utf-8")).decode("ascii"),
            "cancel_url": "",
            "continue_success_url": "",
            "return_deeplink": "",
            "currency": CURRENCIES.get(currency_code, "USD"),
            "custom_fields": "",
            "return_params": "",
            "payout": "",
            "lifetime": "",
            "additional_params": "",
            "google_pay_token": "",
            "skip_success_page": "",
        }
        fields["hash"] = self.sign(*fields.values())

        result = _send(
            self.session,
            "POST",
            self.purchase_url,
            PayWayPurchaseResponse,
            self.timeout,
            files={name: (None, value) for name, value in fields.items()},
            headers={"Accept": "application/json"},
        )
        if result.status.code != "00":
            raise GatewayError(result.status.code, result.status.message or "PayWay rejected the purchase")
        if not result.qr_string:
            raise GatewayError("MISSING_QR", "PayWay response has no qr_string")

        return PayWayCheckout(
            tran_id=tran_id,
            qr_string=result.qr_string,
            deeplink=result.abapay_deeplink,
            checkout_url=result.checkout_qr_url,
        )

    def check_transaction(self, tran_id):
        req_time = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        return _send(
            self.session,
            "POST",
            self.check_url,
            PayWayCheckResponse,
            self.timeout,
            json={
                "req_time": req_time,
                "merchant_id": self.merchant_id,
                "tran_id": tran_id,
                "hash": self.sign(req_time, self.merchant_id, tran_id),
            },
            headers={"Content-Type": "application/json"},
        )

    def is_paid(self, reference):
        result = self.check_transaction(reference)
        if result.status.code != "00":
            raise GatewayError(result.status.code, result.status.message or "Unknown")
        payment_status = result.data.payment_status if result.data else None
        logger.debug("[ABA Check] %s -> %s", reference, payment_status)
        return payment_status in PAYWAY_PAID_STATUSES

    def verify_callback(self, notification):
        if not self.api_key:
            raise InvalidSignature("PAYWAY_API_KEY not configured, cannot verify callbacks")
        if not notification.hash:
            raise InvalidSignature(f"Callback for {notification.tran_id} is unsigned")
        expected = self.sign(notification.tran_id, str(notification.status))
        if not hmac.compare_digest(expected.encode("ascii"), notification.hash.encode("utf-8")):
            raise InvalidSignature(f"Callback signature mismatch for {notification.tran_id}")

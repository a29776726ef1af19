import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from uuid import UUID

import crcmod

from exceptions import AssemblyError, FieldTooLong

MAX_FIELD_LENGTH = 99
CRC_PREFIX = "6304"  # Tag 63, length 04
REFERENCE_LENGTH = 20
CENT = Decimal("0.01")

# CRC-16/CCITT-FALSE: poly 0x1021, init 0xFFFF, no reflection, no final xor
_crc16_ccitt = crcmod.mkCrcFun(0x11021, initCrc=0xFFFF, rev=False, xorOut=0x0000)

_TAG_PATTERN = re.compile(r"\d{2}")
_CURRENCY_PATTERN = re.compile(r"\d{3}")


@dataclass(frozen=True)
class TlvField:
    tag: str
    value: str

    @property
    def length(self):
        return len(self.value.encode("utf-8"))

    def encode(self):
        return encode_field(self.tag, self.value)


@dataclass(frozen=True)
class PaymentRequest:
    order_id: str
    amount: Decimal
    currency_code: str
    merchant_account_id: str
    merchant_name: str
    merchant_city: str
    expires_at: datetime
    scheme_guid: str = "bakong"


@dataclass(frozen=True)
class KhqrPayload:
    raw_string: str
    checksum: str
    reference_hash: str


def encode_field(tag, value):
    if not _TAG_PATTERN.fullmatch(tag):
        raise ValueError(f"Tag must be two ASCII digits, got {tag!r}")
    size = len(value.encode("utf-8"))
    if size > MAX_FIELD_LENGTH:
        raise FieldTooLong(tag, size)
    return f"{tag}{size:02}{value}"


def encode_fields(fields):
    return "".join(f.encode() for f in fields)


def crc16(data):
    """CRC-16/CCITT-FALSE of ``data`` as 4 uppercase hex digits."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return f"{_crc16_ccitt(data) & 0xFFFF:04X}"


def build_merchant_account_info(scheme_guid, account_id):
    # Tag 29: Merchant Account Information
    # 00: Global Unique Identifier
    # 01: Merchant ID
    return encode_field("00", scheme_guid) + encode_field("01", account_id)


def order_reference(order_id):
    """Bill number carried in Tag 62: the first 20 hex chars of the order id.

    Ids that are not UUIDs are cut to 20 chars as they are.
    """
    if not isinstance(order_id, UUID):
        try:
            order_id = UUID(str(order_id))
        except ValueError:
            return str(order_id)[:REFERENCE_LENGTH]
    return order_id.hex[:REFERENCE_LENGTH]


def format_amount(amount):
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise AssemblyError(f"Amount {amount!r} is not a number") from e
    if not value.is_finite() or value <= 0:
        raise AssemblyError(f"Amount {amount!r} must be a positive number")
    if value != value.quantize(CENT):
        raise AssemblyError(f"Amount {amount!r} has more than two fraction digits")
    return f"{value.quantize(CENT):f}"


def truncate_utf8(value, limit=MAX_FIELD_LENGTH):
    encoded = value.encode("utf-8")
    if len(encoded) <= limit:
        return value
    # Never split a multi-byte character
    return encoded[:limit].decode("utf-8", errors="ignore")


class KHQR:
    FIELD_ORDER = ("00", "01", "29", "52", "53", "54", "58", "59", "60", "62")

    def __init__(self, currency_code="840"):
        self.payload = {}
        # Basic Defaults
        self.payload["00"] = "01"  # Payload Format Indicator
        self.payload["01"] = "12"  # Dynamic (12) or Static (11)
        self.payload["52"] = "5999"  # Merchant Category Code (General)
        self.set_currency(currency_code)
        self.payload["58"] = "KH"  # Country Code

    def set_merchant(self, scheme_guid, account_id):
        self.payload["29"] = build_merchant_account_info(scheme_guid, account_id)

    def set_currency(self, currency_code):
        # Currency: 840=USD, 116=KHR
        if not _CURRENCY_PATTERN.fullmatch(currency_code or ""):
            raise AssemblyError(f"Currency code must be 3 digits, got {currency_code!r}")
        self.payload["53"] = currency_code

    def set_amount(self, amount):
        self.payload["54"] = format_amount(amount)

    def set_merchant_name(self, name):
        self.payload["59"] = truncate_utf8(name)

    def set_merchant_city(self, city):
        self.payload["60"] = city

    def set_bill_number(self, reference):
        # Tag 62: Additional Data, 01: Bill Number
        self.payload["62"] = encode_field("01", reference)

    def fields(self):
        missing = [tag for tag in self.FIELD_ORDER if tag not in self.payload]
        if missing:
            raise AssemblyError(f"Payload is missing tags {', '.join(missing)}")
        return [TlvField(tag, self.payload[tag]) for tag in self.FIELD_ORDER]

    def generate_string(self):
        # The CRC commits to its own tag and length, not to its value
        data_to_sign = encode_fields(self.fields()) + CRC_PREFIX
        return data_to_sign + crc16(data_to_sign)


def assemble(request):
    if not request.merchant_account_id:
        raise AssemblyError("Merchant account id is not configured")

    qr = KHQR(currency_code=request.currency_code)
    qr.set_merchant(request.scheme_guid, request.merchant_account_id)
    qr.set_amount(request.amount)
    qr.set_merchant_name(request.merchant_name)
    qr.set_merchant_city(request.merchant_city)
    qr.set_bill_number(order_reference(request.order_id))
    raw = qr.generate_string()

    return KhqrPayload(
        raw_string=raw,
        checksum=raw[-4:],
        reference_hash=hashlib.md5(raw.encode("utf-8")).hexdigest(),
    )


def parse_fields(raw):
    """Splits a payload back into its ordered tag/length/value triples.

    Lengths count UTF-8 bytes, so the scan runs over the encoded payload.
    """
    data = raw.encode("utf-8")
    fields = []
    pos = 0
    while pos < len(data):
        if pos + 4 > len(data):
            raise ValueError(f"Truncated field header at offset {pos}")
        tag = data[pos:pos + 2].decode("ascii")
        length_text = data[pos + 2:pos + 4].decode("ascii")
        if not (tag.isdigit() and length_text.isdigit()):
            raise ValueError(f"Malformed field header {tag + length_text!r} at offset {pos}")
        end = pos + 4 + int(length_text)
        if end > len(data):
            raise ValueError(f"Tag {tag} runs past the end of the payload")
        fields.append(TlvField(tag, data[pos + 4:end].decode("utf-8")))
        pos = end
    return fields


def verify_payload(raw):
    if len(raw) < 8 or raw[-8:-4] != CRC_PREFIX:
        return False
    return crc16(raw[:-4]) == raw[-4:]


def build_payment_request(order_id, amount, settings, now=None):
    """Recomputes the request from the order every time a QR is asked for."""
    now = now or datetime.utcnow()
    return PaymentRequest(
        order_id=str(order_id),
        amount=amount,
        currency_code=settings.khqr_currency_code,
        merchant_account_id=settings.khqr_merchant_id,
        merchant_name=settings.khqr_merchant_name,
        merchant_city=settings.khqr_merchant_city,
        expires_at=now + timedelta(minutes=settings.khqr_expiry_minutes),
        scheme_guid=settings.khqr_scheme_guid,
    )

"""
STK Push request construction.

Everything here is pure: phone and amount validation happen before the
gateway client touches the network.
"""

import base64
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from foodhub.errors import ValidationError

COUNTRY_CODE = "254"
NATIONAL_NUMBER_LENGTH = 9

# Daraja field limits
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

_SEPARATORS = re.compile(r"[\s\-()]")
_ASCII_DIGITS = re.compile(r"[0-9]+")


def normalize_phone(
    phone: Any,
    country_code: str = COUNTRY_CODE,
    national_length: int = NATIONAL_NUMBER_LENGTH,
) -> str:
    """
    Normalise a phone number to the international format Daraja expects (2547XXXXXXXX).

    Accepts: +254712345678, 254712345678, 0712345678, 712345678.
    Raises ValidationError for anything that is not exactly
    ``len(country_code) + national_length`` digits after normalisation.
    """
    if phone is None or str(phone).strip() == "":
        raise ValidationError("Phone number is required")

    digits = _SEPARATORS.sub("", str(phone).strip())
    if digits.startswith("+"):
        digits = digits[1:]

    if not _ASCII_DIGITS.fullmatch(digits):
        raise ValidationError(f"Phone number {phone!r} must contain only digits")

    if digits.startswith(country_code):
        normalized = digits
    elif digits.startswith("0"):
        normalized = country_code + digits[1:]
    else:
        normalized = country_code + digits

    expected = len(country_code) + national_length
    if len(normalized) != expected:
        raise ValidationError(
            f"Phone number {phone!r} normalises to {normalized}, expected {expected} digits"
        )
    return normalized


def validate_amount(amount: Any) -> int:
    """Return the amount as a positive whole number of shillings or raise ValidationError."""
    if isinstance(amount, bool) or amount is None:
        raise ValidationError("Amount must be a number")

    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")

    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    if value <= 0:
        raise ValidationError("Amount must be greater than 0")
    if value != value.to_integral_value():
        raise ValidationError("Amount must be a whole number of shillings")

    return int(value)


def gateway_timezone(utc_offset_hours: int = 3) -> timezone:
    return timezone(timedelta(hours=utc_offset_hours))


def generate_timestamp(now: Optional[datetime] = None, tz: Optional[timezone] = None) -> str:
    """YYYYMMDDHHMMSS in the gateway's local time (East Africa Time by default)."""
    tz = tz or gateway_timezone()
    now = now or datetime.now(tz)
    if now.tzinfo is not None:
        now = now.astimezone(tz)
    return now.strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Password = Base64(BusinessShortCode + Passkey + Timestamp)"""
    raw = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw.encode("utf-8")).decode("utf-8")


class StkPushRequestBuilder:
    """Builds signed STK Push and STK query payloads for one shortcode."""

    def __init__(
        self,
        shortcode: str,
        passkey: str,
        transaction_type: str = "CustomerPayBillOnline",
        utc_offset_hours: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not shortcode or not passkey:
            raise ValueError("StkPushRequestBuilder: 'shortcode' and 'passkey' are required")

        self.shortcode = str(shortcode)
        self.passkey = passkey
        self.transaction_type = transaction_type
        self.tz = gateway_timezone(utc_offset_hours)
        self._clock = clock or (lambda: datetime.now(self.tz))

    def credentials(self):
        """Fresh (timestamp, password) pair. Never reuse one across requests."""
        timestamp = generate_timestamp(self._clock(), self.tz)
        return timestamp, generate_password(self.shortcode, self.passkey, timestamp)

    def build(
        self,
        phone: Any,
        amount: Any,
        account_reference: str,
        description: str,
        callback_url: str,
    ) -> Dict[str, Any]:
        phone = normalize_phone(phone)
        amount = validate_amount(amount)
        if not callback_url:
            raise ValidationError("Callback URL is required for STK Push")
        if not account_reference:
            raise ValidationError("Account reference is required")

        timestamp, password = self.credentials()
        return {
            "BusinessShortCode": self.shortcode,
            "Password":          password,
            "Timestamp":         timestamp,
            "TransactionType":   self.transaction_type,
            "Amount":            amount,
            "PartyA":            phone,
            "PartyB":            self.shortcode,
            "PhoneNumber":       phone,
            "CallBackURL":       callback_url,
            "AccountReference":  str(account_reference)[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc":   (description or "Payment")[:TRANSACTION_DESC_MAX],
        }

    def build_query(self, checkout_request_id: str) -> Dict[str, Any]:
        if not checkout_request_id:
            raise ValidationError("Checkout request ID is required")

        timestamp, password = self.credentials()
        return {
            "BusinessShortCode": self.shortcode,
            "Password":          password,
            "Timestamp":         timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

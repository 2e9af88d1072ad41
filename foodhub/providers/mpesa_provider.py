"""
M-Pesa Gateway Client
Based on the Safaricom Daraja API.

Supported flows
---------------
STK Push (Lipa na M-Pesa Online)
    POST /mpesa/stkpush/v1/processrequest
    POST /mpesa/stkpushquery/v1/query         (status poll)

Reversal (refunds)
    POST /mpesa/reversal/v1/request

Authentication
    Delegated to TokenManager (mpesa_auth.py); one manager per client.

Retry policy
------------
Timeouts, connection errors, HTTP 5xx and HTTP 401 are transport failures:
the request is rebuilt (fresh timestamp and password) and sent again with a
freshly acquired token, up to ``max_attempts`` times. Anything the gateway
answers at application level (4xx, or HTTP 200 with a non-zero ResponseCode)
is a GatewayRejection and is never retried, so a declined charge cannot be
replayed into a double charge.

Required config keys
--------------------
    consumer_key, consumer_secret, shortcode, passkey
    environment         – "sandbox" (default) | "production"

Optional config keys
--------------------
    transaction_type    – "CustomerPayBillOnline" (default) | "CustomerBuyGoodsOnline"
    timeout, max_attempts, retry_backoff, utc_offset_hours, auth_alert_threshold
    initiator_name, security_credential, result_url, queue_timeout_url  (reversals)
"""

import logging
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

import requests

from foodhub.errors import (
    AuthenticationError,
    GatewayRejection,
    RetryableGatewayError,
    ValidationError,
)
from foodhub.providers.base import PaymentGateway, PushResult, ReversalResult, SettlementResult
from foodhub.providers.mpesa_auth import TokenManager
from foodhub.providers.mpesa_request import StkPushRequestBuilder

logger = logging.getLogger(__name__)

# Daraja base URLs
_BASE_URLS = {
    "sandbox":    "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

# STK query answers HTTP 500 with this code until the customer has responded
PROCESSING_ERROR_CODE = "500.001.1001"


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parse_transaction_date(value: Any) -> Optional[datetime]:
    """Daraja sends TransactionDate as a YYYYMMDDHHMMSS number."""
    if value is None or value == "":
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None


def _parse_result_code(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MPesaGatewayClient(PaymentGateway):
    """M-Pesa (Daraja API) STK Push client."""

    # Daraja endpoint paths
    _EP_STK_PUSH  = "/mpesa/stkpush/v1/processrequest"
    _EP_STK_QUERY = "/mpesa/stkpushquery/v1/query"
    _EP_REVERSAL  = "/mpesa/reversal/v1/request"

    def __init__(
        self,
        token_manager: TokenManager,
        request_builder: StkPushRequestBuilder,
        base_url: str,
        timeout: int = 30,
        max_attempts: int = 3,
        retry_backoff: Sequence[float] = (1, 2, 4),
        initiator_name: str = "",
        security_credential: str = "",
        result_url: str = "",
        queue_timeout_url: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.token_manager = token_manager
        self.request_builder = request_builder
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff = list(retry_backoff) or [0]

        # Optional – needed only for reversals
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self.result_url = result_url
        self.queue_timeout_url = queue_timeout_url

        self._sleep = sleep
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MPesaGatewayClient":
        environment = (config.get("environment") or "sandbox").lower()
        if environment not in _BASE_URLS:
            raise ValueError(
                f"MPesaGatewayClient: environment must be 'sandbox' or 'production', got '{environment}'"
            )
        base_url = config.get("base_url") or _BASE_URLS[environment]

        token_manager = TokenManager(
            base_url=base_url,
            consumer_key=config.get("consumer_key", ""),
            consumer_secret=config.get("consumer_secret", ""),
            alert_threshold=config.get("auth_alert_threshold", 3),
        )
        builder = StkPushRequestBuilder(
            shortcode=str(config.get("shortcode", "")),
            passkey=config.get("passkey", ""),
            transaction_type=config.get("transaction_type", "CustomerPayBillOnline"),
            utc_offset_hours=config.get("utc_offset_hours", 3),
        )
        return cls(
            token_manager=token_manager,
            request_builder=builder,
            base_url=base_url,
            timeout=config.get("timeout", 30),
            max_attempts=config.get("max_attempts", 3),
            retry_backoff=config.get("retry_backoff", (1, 2, 4)),
            initiator_name=config.get("initiator_name", ""),
            security_credential=config.get("security_credential", ""),
            result_url=config.get("result_url", ""),
            queue_timeout_url=config.get("queue_timeout_url", ""),
        )

    # PaymentGateway ABC

    def initiate_push(
        self,
        phone: str,
        amount: Any,
        account_reference: str,
        description: str,
        callback_url: str,
    ) -> PushResult:
        """
        Send an STK Push request.

        Raises:
            ValidationError        – bad phone/amount/callback, before any network call
            GatewayRejection       – gateway refused the request (never retried)
            RetryableGatewayError  – transport failures outlasted max_attempts
            AuthenticationError    – token acquisition kept failing
        """
        def build():
            return self.request_builder.build(
                phone=phone,
                amount=amount,
                account_reference=account_reference,
                description=description,
                callback_url=callback_url,
            )

        resp = self._send(self._EP_STK_PUSH, build, context="stk_push")
        data = self._json(resp)

        if not resp.ok:
            raise GatewayRejection(
                f"M-Pesa [stk_push] HTTP {resp.status_code}: {self._error_message(resp, data)}",
                response_code=data.get("errorCode"),
                raw_response=data,
            )

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0" or not data.get("CheckoutRequestID"):
            raise GatewayRejection(
                f"M-Pesa [stk_push] rejected with code {response_code or 'n/a'}: "
                f"{self._error_message(resp, data)}",
                response_code=response_code or data.get("errorCode"),
                raw_response=data,
            )

        return PushResult(
            merchant_request_id=data.get("MerchantRequestID", ""),
            checkout_request_id=data["CheckoutRequestID"],
            response_code=response_code,
            customer_message=data.get("CustomerMessage", ""),
            response_description=data.get("ResponseDescription", ""),
            raw_response=data,
        )

    def query_status(self, checkout_request_id: str) -> SettlementResult:
        """
        Query an STK Push by CheckoutRequestID.

        Returns a non-terminal result (result_code None) while the customer
        has not yet answered the prompt.
        """
        resp = self._send(
            self._EP_STK_QUERY,
            lambda: self.request_builder.build_query(checkout_request_id),
            context="stk_query",
            passthrough_codes=(PROCESSING_ERROR_CODE,),
        )
        data = self._json(resp)

        if data.get("errorCode") == PROCESSING_ERROR_CODE:
            return SettlementResult(
                checkout_request_id=checkout_request_id,
                result_code=None,
                result_desc=data.get("errorMessage", "The transaction is being processed"),
                source="status_query",
                raw=data,
            )

        if not resp.ok or str(data.get("ResponseCode", "")) != "0":
            raise GatewayRejection(
                f"M-Pesa [stk_query] HTTP {resp.status_code}: {self._error_message(resp, data)}",
                response_code=data.get("errorCode") or data.get("ResponseCode"),
                raw_response=data,
            )

        return SettlementResult(
            checkout_request_id=data.get("CheckoutRequestID") or checkout_request_id,
            result_code=_parse_result_code(data.get("ResultCode")),
            result_desc=data.get("ResultDesc", ""),
            merchant_request_id=data.get("MerchantRequestID"),
            receipt_number=data.get("MpesaReceiptNumber") or None,
            amount=_to_decimal(data.get("Amount")),
            transaction_date=_parse_transaction_date(data.get("TransactionDate")),
            phone_number=str(data["PhoneNumber"]) if data.get("PhoneNumber") else None,
            source="status_query",
            raw=data,
        )

    def parse_callback(self, payload: Dict[str, Any]) -> SettlementResult:
        """
        Decode the Body.stkCallback notification.

        CallbackMetadata.Item is a list of Name/Value pairs; it is folded into
        the named fields of SettlementResult here and nowhere else.
        """
        stk = (payload or {}).get("Body", {}).get("stkCallback") if isinstance(payload, dict) else None
        if not isinstance(stk, dict):
            raise ValidationError("M-Pesa callback has no Body.stkCallback")

        checkout_id = stk.get("CheckoutRequestID")
        if not checkout_id:
            raise ValidationError("M-Pesa callback has no CheckoutRequestID")

        result_code = _parse_result_code(stk.get("ResultCode"))
        if result_code is None:
            raise ValidationError(f"M-Pesa callback has invalid ResultCode {stk.get('ResultCode')!r}")

        meta: Dict[str, Any] = {}
        for item in (stk.get("CallbackMetadata") or {}).get("Item", []) or []:
            if isinstance(item, dict) and item.get("Name"):
                meta[item["Name"]] = item.get("Value")

        return SettlementResult(
            checkout_request_id=checkout_id,
            result_code=result_code,
            result_desc=stk.get("ResultDesc", ""),
            merchant_request_id=stk.get("MerchantRequestID"),
            receipt_number=meta.get("MpesaReceiptNumber"),
            amount=_to_decimal(meta.get("Amount")),
            transaction_date=_parse_transaction_date(meta.get("TransactionDate")),
            phone_number=str(meta["PhoneNumber"]) if meta.get("PhoneNumber") else None,
            source="callback",
            raw=stk,
        )

    # Reversal

    def request_reversal(
        self,
        transaction_id: str,
        amount: Any,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Reverse a completed M-Pesa transaction (Daraja Reversal API).

        Sent once: a reversal that timed out may still have been applied.
        The outcome is delivered asynchronously to result_url.
        """
        self._assert_initiator_config("request_reversal")

        def build():
            return {
                "Initiator":              self.initiator_name,
                "SecurityCredential":     self.security_credential,
                "CommandID":              "TransactionReversal",
                "TransactionID":          transaction_id,
                "Amount":                 int(Decimal(str(amount))),
                "ReceiverParty":          self.request_builder.shortcode,
                "RecieverIdentifierType": "11",
                "ResultURL":              self.result_url,
                "QueueTimeOutURL":        self.queue_timeout_url,
                "Remarks":                (reason or "Refund")[:100],
                "Occasion":               "",
            }

        resp = self._send(self._EP_REVERSAL, build, context="reversal", max_attempts=1)
        data = self._json(resp)

        if not resp.ok or str(data.get("ResponseCode", "")) != "0":
            raise GatewayRejection(
                f"M-Pesa [reversal] HTTP {resp.status_code}: {self._error_message(resp, data)}",
                response_code=data.get("errorCode") or data.get("ResponseCode"),
                raw_response=data,
            )

        return {
            "conversation_id":            data.get("ConversationID"),
            "originator_conversation_id": data.get("OriginatorConversationID"),
            "response_description":       data.get("ResponseDescription"),
            "raw_response":               data,
        }

    def parse_reversal_result(self, payload: Dict[str, Any]) -> ReversalResult:
        """
        Decode the Result notification Daraja posts to result_url (or
        queue_timeout_url) once a reversal has been processed.
        """
        result = payload.get("Result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            raise ValidationError("M-Pesa reversal result has no Result object")

        conversation_id = result.get("ConversationID")
        originator_id = result.get("OriginatorConversationID")
        if not conversation_id and not originator_id:
            raise ValidationError("M-Pesa reversal result has no ConversationID")

        result_code = _parse_result_code(result.get("ResultCode"))
        if result_code is None:
            raise ValidationError(f"M-Pesa reversal result has invalid ResultCode {result.get('ResultCode')!r}")

        return ReversalResult(
            conversation_id=conversation_id,
            originator_conversation_id=originator_id,
            result_code=result_code,
            result_desc=result.get("ResultDesc", ""),
            transaction_id=result.get("TransactionID"),
            raw=result,
        )

    @property
    def supports_reversal(self) -> bool:
        return all([self.initiator_name, self.security_credential, self.result_url, self.queue_timeout_url])

    # Private – HTTP helpers

    def _send(
        self,
        endpoint: str,
        build_payload: Callable[[], Dict[str, Any]],
        context: str,
        passthrough_codes: Iterable[str] = (),
        max_attempts: Optional[int] = None,
    ) -> requests.Response:
        """POST with bounded retries on transport failures; returns the last usable response."""
        attempts = max_attempts or self.max_attempts
        url = f"{self.base_url}{endpoint}"
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            # Rebuilt every attempt so the timestamp/password are never reused
            payload = build_payload()

            try:
                token = self.token_manager.get_access_token()
                resp = self._session.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                )
            except AuthenticationError as exc:
                last_error = exc
            except requests.Timeout as exc:
                last_error = RetryableGatewayError(
                    f"M-Pesa [{context}]: timed out after {self.timeout}s"
                )
                last_error.__cause__ = exc
            except requests.RequestException as exc:
                last_error = RetryableGatewayError(f"M-Pesa [{context}]: network error – {exc}")
                last_error.__cause__ = exc
            else:
                logger.debug("MPesa [%s] HTTP %s (attempt %d)", context, resp.status_code, attempt)

                if resp.status_code == 401:
                    last_error = RetryableGatewayError(f"M-Pesa [{context}]: access token rejected")
                elif resp.status_code >= 500 and self._json(resp).get("errorCode") not in passthrough_codes:
                    last_error = RetryableGatewayError(
                        f"M-Pesa [{context}] HTTP {resp.status_code}: {resp.text[:300]}"
                    )
                else:
                    return resp

            if attempt < attempts:
                delay = self.retry_backoff[min(attempt - 1, len(self.retry_backoff) - 1)]
                logger.warning(
                    "MPesa [%s] attempt %d/%d failed (%s); retrying in %ss",
                    context, attempt, attempts, last_error, delay,
                )
                self.token_manager.invalidate()
                self._sleep(delay)

        logger.error("MPesa [%s] giving up after %d attempts: %s", context, attempts, last_error)
        raise last_error

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"raw": data}

    @staticmethod
    def _error_message(resp: requests.Response, data: Dict[str, Any]) -> str:
        return (
            data.get("errorMessage")
            or data.get("ResponseDescription")
            or data.get("ResultDesc")
            or data.get("CustomerMessage")
            or resp.text[:300]
        )

    def _assert_initiator_config(self, context: str) -> None:
        """Raise if initiator credentials are not configured."""
        missing = []
        if not self.initiator_name:
            missing.append("initiator_name")
        if not self.security_credential:
            missing.append("security_credential")
        if not self.result_url:
            missing.append("result_url")
        if not self.queue_timeout_url:
            missing.append("queue_timeout_url")
        if missing:
            raise ValidationError(
                f"M-Pesa [{context}]: missing config – {', '.join(missing)}"
            )

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional


@dataclass
class PushResult:
    """Gateway acknowledgement of a push-payment request."""
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    customer_message: str = ''
    response_description: str = ''
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementResult:
    """
    Outcome of a push payment, from a callback or a status query.

    result_code is None while the gateway is still processing the request.
    """
    checkout_request_id: str
    result_code: Optional[int]
    result_desc: str = ''
    merchant_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_date: Optional[datetime] = None
    phone_number: Optional[str] = None
    source: str = 'callback'
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.result_code is not None

    @property
    def is_success(self) -> bool:
        return self.result_code == 0


@dataclass
class ReversalResult:
    """Asynchronous outcome of a reversal request, posted to the result URL."""
    conversation_id: Optional[str]
    originator_conversation_id: Optional[str]
    result_code: int
    result_desc: str = ''
    transaction_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.result_code == 0


class PaymentGateway(ABC):
    """Abstract base class for push-payment gateways"""

    @abstractmethod
    def initiate_push(
            self,
            phone: str,
            amount: Any,
            account_reference: str,
            description: str,
            callback_url: str
    ) -> PushResult:
        """
        Ask the gateway to prompt the customer's phone for payment

        Args:
            phone: Customer phone number, local or international format
            amount: Whole-unit amount to charge
            account_reference: Order reference shown to the customer
            description: Short description shown to the customer
            callback_url: Where the gateway posts the final result

        Returns:
            PushResult carrying the checkout request ID
        """
        pass

    @abstractmethod
    def query_status(self, checkout_request_id: str) -> SettlementResult:
        """
        Poll the gateway for the outcome of a push request

        Args:
            checkout_request_id: ID returned by initiate_push

        Returns:
            SettlementResult; non-terminal while the customer has not answered
        """
        pass

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> SettlementResult:
        """
        Decode an asynchronous result notification

        Args:
            payload: Parsed JSON body posted by the gateway

        Returns:
            SettlementResult
        """
        pass

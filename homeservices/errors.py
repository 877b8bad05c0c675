"""
Domain errors

Every failure the marketplace core reports carries an ErrorKind so callers
(routers, the conversation executor, the payment saga) branch on the kind
rather than on message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"
    SLOT_NOT_FOUND = "SlotNotFound"
    SLOT_HAS_RESERVATIONS = "SlotHasReservations"
    OVERLAP_CONFLICT = "OverlapConflict"
    INVALID_TRANSITION = "InvalidTransition"
    IDEMPOTENCY_CONFLICT = "IdempotencyConflict"
    UNKNOWN_PRICING_RULE = "UnknownPricingRule"
    INVALID_QUANTITY = "InvalidQuantity"
    PAYMENT_FAILURE = "PaymentFailure"
    ORDER_NOT_FOUND = "OrderNotFound"
    PARTNER_NOT_FOUND = "PartnerNotFound"
    CONVERSATION_PARSE_FAILURE = "ConversationParseFailure"


# HTTP status used by the API exception handler for each kind
HTTP_STATUS_BY_KIND = {
    ErrorKind.INSUFFICIENT_CAPACITY: 409,
    ErrorKind.SLOT_NOT_FOUND: 404,
    ErrorKind.SLOT_HAS_RESERVATIONS: 409,
    ErrorKind.OVERLAP_CONFLICT: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.IDEMPOTENCY_CONFLICT: 409,
    ErrorKind.UNKNOWN_PRICING_RULE: 422,
    ErrorKind.INVALID_QUANTITY: 422,
    ErrorKind.PAYMENT_FAILURE: 502,
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.PARTNER_NOT_FOUND: 404,
    ErrorKind.CONVERSATION_PARSE_FAILURE: 422,
}


class DomainError(Exception):
    """Base class for marketplace failures"""

    kind: ErrorKind

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 400)


class InsufficientCapacity(DomainError):
    kind = ErrorKind.INSUFFICIENT_CAPACITY


class SlotNotFound(DomainError):
    kind = ErrorKind.SLOT_NOT_FOUND


class SlotHasReservations(DomainError):
    kind = ErrorKind.SLOT_HAS_RESERVATIONS


class OverlapConflict(DomainError):
    kind = ErrorKind.OVERLAP_CONFLICT


class InvalidTransition(DomainError):
    kind = ErrorKind.INVALID_TRANSITION


class IdempotencyConflict(DomainError):
    kind = ErrorKind.IDEMPOTENCY_CONFLICT


class UnknownPricingRule(DomainError):
    kind = ErrorKind.UNKNOWN_PRICING_RULE


class InvalidQuantity(DomainError):
    kind = ErrorKind.INVALID_QUANTITY


class PaymentFailure(DomainError):
    """Processor rejected or could not be reached"""

    kind = ErrorKind.PAYMENT_FAILURE

    def __init__(self, message: str = "", details: Optional[dict] = None, retryable: bool = False):
        super().__init__(message, details)
        self.retryable = retryable


class OrderNotFound(DomainError):
    kind = ErrorKind.ORDER_NOT_FOUND


class ConversationParseFailure(DomainError):
    kind = ErrorKind.CONVERSATION_PARSE_FAILURE


class PartnerNotFound(DomainError):
    kind = ErrorKind.PARTNER_NOT_FOUND

"""
Dispatch and dispatch payment enumerations.
"""

import enum


class DispatchStatus(str, enum.Enum):
    """
    Dispatch status enumeration.

    Status flow:
        DRAFT → LOADING → DISPATCHED → RECEIVING → RECEIVED
        PARTIAL_RECEIVED: origin dispatch after a partial extraction
        DISCREPANCY: declared totals did not match received totals
        CANCELLED: withdrawn, may be deleted
    """
    DRAFT = "DRAFT"
    LOADING = "LOADING"
    DISPATCHED = "DISPATCHED"
    RECEIVING = "RECEIVING"
    RECEIVED = "RECEIVED"
    PARTIAL_RECEIVED = "PARTIAL_RECEIVED"
    DISCREPANCY = "DISCREPANCY"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    """Dispatch payment status, derived from payments vs cost_in_cents."""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"


class PaymentMethod(str, enum.Enum):
    """Payment method enumeration."""
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHECK = "CHECK"
    PAYPAL = "PAYPAL"
    ZELLE = "ZELLE"

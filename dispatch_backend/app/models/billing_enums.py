"""
Billing enumerations for pricing and the inter-agency debt ledger.
"""

import enum


class Unit(str, enum.Enum):
    """Pricing unit of an order line item."""
    PER_LB = "PER_LB"  # rate × weight + customs + charge + insurance
    FIXED = "FIXED"  # rate + customs


class DebtStatus(str, enum.Enum):
    """Inter-agency debt status enumeration."""
    PENDING = "PENDING"  # Open obligation
    PAID = "PAID"  # Settled by the debtor
    CANCELLED = "CANCELLED"  # Superseded by a recalculation


class DebtRelationship:
    """Relationship tags stored on inter-agency debts."""
    PARENT = "parent"
    SKIPPED_PARENT = "skipped_parent"
    GRANDPARENT = "grandparent"
    DISPATCH_RECEPTION = "dispatch_reception"

    @staticmethod
    def ancestor_level(level: int) -> str:
        return f"ancestor_level_{level}"

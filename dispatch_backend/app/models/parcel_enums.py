"""
Parcel status and parcel event enumerations.
"""

import enum


class ParcelStatus(str, enum.Enum):
    """
    Parcel lifecycle status enumeration.

    Status flow inside the dispatch engine:
        IN_AGENCY / IN_PALLET → IN_DISPATCH → RECEIVED_IN_DISPATCH | IN_WAREHOUSE
    Later logistics statuses are carried but never set by this service.
    """
    IN_AGENCY = "IN_AGENCY"
    IN_PALLET = "IN_PALLET"
    IN_DISPATCH = "IN_DISPATCH"
    RECEIVED_IN_DISPATCH = "RECEIVED_IN_DISPATCH"
    IN_WAREHOUSE = "IN_WAREHOUSE"
    IN_CONTAINER = "IN_CONTAINER"
    IN_TRANSIT = "IN_TRANSIT"
    AT_PORT_OF_ENTRY = "AT_PORT_OF_ENTRY"
    CUSTOMS_INSPECTION = "CUSTOMS_INSPECTION"
    RELEASED_FROM_CUSTOMS = "RELEASED_FROM_CUSTOMS"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    FAILED_DELIVERY = "FAILED_DELIVERY"
    RETURNED_TO_SENDER = "RETURNED_TO_SENDER"


class ParcelEventType(str, enum.Enum):
    """Parcel event type enumeration (append-only history)."""
    CREATED = "CREATED"
    ADDED_TO_PALLET = "ADDED_TO_PALLET"
    ADDED_TO_DISPATCH = "ADDED_TO_DISPATCH"
    RECEIVED_IN_DISPATCH = "RECEIVED_IN_DISPATCH"
    REMOVED_FROM_DISPATCH = "REMOVED_FROM_DISPATCH"
    STATUS_CORRECTED = "STATUS_CORRECTED"

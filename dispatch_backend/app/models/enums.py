"""
User role and agency type enumerations.

Defines the role types that reach the dispatch engine through the
authorization context, and the kinds of agency in the hierarchy.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ROOT: System owner, bypasses dispatch mutability and deletion rules
        ADMINISTRATOR: Platform administrator, may act on any agency's dispatches
        FORWARDER_ADMIN: Operates a forwarder (top-of-hierarchy) agency
        AGENCY_ADMIN: Manages a regular agency
        AGENCY_SUPERVISOR: Supervises agency operations
        AGENCY_SALES: Agency sales staff
    """
    ROOT = "ROOT"
    ADMINISTRATOR = "ADMINISTRATOR"
    FORWARDER_ADMIN = "FORWARDER_ADMIN"
    AGENCY_ADMIN = "AGENCY_ADMIN"
    AGENCY_SUPERVISOR = "AGENCY_SUPERVISOR"
    AGENCY_SALES = "AGENCY_SALES"


class AgencyType(str, enum.Enum):
    """Agency type enumeration. FORWARDER agencies may receive from anyone."""
    AGENCY = "AGENCY"
    FORWARDER = "FORWARDER"
    RESELLER = "RESELLER"

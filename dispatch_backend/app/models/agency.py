"""
Agency database model.

Agencies form a tree through ``parent_agency_id``; the hierarchy is read-only
to the dispatch engine.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Boolean
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.enums import AgencyType


class Agency(Base):
    """
    Agency model.

    A node in the agency hierarchy. FORWARDER agencies sit at the top and may
    receive parcels from any agency, not only their descendants.
    """
    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)

    # Hierarchy
    parent_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=True, index=True)
    agency_type = Column(Enum(AgencyType), default=AgencyType.AGENCY, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_forwarder(self) -> bool:
        return self.agency_type == AgencyType.FORWARDER

    def __repr__(self):
        return f"<Agency(id={self.id}, name='{self.name}', parent={self.parent_agency_id})>"

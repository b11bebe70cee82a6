"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from dispatch_backend.app.api.v1.endpoints import dispatches, inter_agency_debts

router = APIRouter()

router.include_router(dispatches.router)
router.include_router(inter_agency_debts.router)

"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import credits, admin_credits

router = APIRouter()

# Wallet, deposits, spends, refunds
router.include_router(credits.router)

# Adjustments, rate tables, expiration sweeps
router.include_router(admin_credits.router)

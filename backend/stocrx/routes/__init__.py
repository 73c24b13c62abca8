"""STOCRX Routes"""

from .vehicles import router as vehicles_router
from .subscriptions import router as subscriptions_router
from .payments import router as payments_router
from .claims import router as claims_router

__all__ = [
    "vehicles_router",
    "subscriptions_router",
    "payments_router",
    "claims_router",
]

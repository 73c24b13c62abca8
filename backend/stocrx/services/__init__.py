"""STOCRX Services

Service singletons live in their submodules, e.g.
``from stocrx.services.ledger_service import ledger_service``.
"""

from .fleet_service import FleetService
from .ledger_service import LedgerService
from .subscription_service import SubscriptionService
from .claims_service import ClaimsService
from .record_store import RecordStore

__all__ = [
    "FleetService",
    "LedgerService",
    "SubscriptionService",
    "ClaimsService",
    "RecordStore",
]

"""
STOCRX - Subscription to Own
============================

Subscription lifecycle and financial ledger engine.

Scope:
- Pricing (tax-inclusive recurring charges, late fees, early buyout)
- Append-only payment ledger with platform fees
- Delinquency tracking derived from the ledger
- Subscription state machine gated by KYC and vehicle availability
- Claims adjudication (damage / insurance)

Everything else (listings, marketing pages, uploads, identity provider)
talks to this package through the routes or the services below.
"""

__version__ = "1.0.0"
__product__ = "STOCRX"

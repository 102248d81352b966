"""
Points Ledger for group challenges

This module provides:
- Per-group point balances that can never go negative
- Challenge awards credited at most once per (user, challenge)
- Reward redemptions with an atomic balance check and debit
- Compensation of half-applied redemptions
- Read-only views: available rewards, redemption history, group statistics
"""

from .errors import (
    DuplicateAwardError,
    InsufficientBalanceError,
    LedgerServiceError,
    MembershipRequiredError,
    NotFoundError,
    PersistenceError,
    RewardInactiveError,
    TransientError,
)
from .models import (
    AwardRecord,
    Membership,
    MembershipRole,
    Redemption,
    Reward,
)
from .service import AwardEngine, LedgerQueryFacade, LedgerService, RedemptionEngine
from .sql_storage import SqlStorage
from .storage import InMemoryStorage

__all__ = [
    "AwardEngine",
    "AwardRecord",
    "DuplicateAwardError",
    "InMemoryStorage",
    "InsufficientBalanceError",
    "LedgerQueryFacade",
    "LedgerService",
    "LedgerServiceError",
    "Membership",
    "MembershipRequiredError",
    "MembershipRole",
    "NotFoundError",
    "PersistenceError",
    "Redemption",
    "RedemptionEngine",
    "Reward",
    "RewardInactiveError",
    "SqlStorage",
    "TransientError",
]

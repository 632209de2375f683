"""
Loyalty Points Engine

This package provides:
- A points ledger with immutable transactions and non-negative balances
- Reward redemptions: pending → approved → used / expired / cancelled
- Idempotent mission and daily streak awards
- Business levels with admin-approved upgrades
"""

from .models import (
    Account,
    AccountRole,
    BusinessProgress,
    Redemption,
    RedemptionStatus,
    Reward,
    Transaction,
    TransactionKind,
)
from .service import LoyaltyService
from .streaks import compute_streak_reward

__all__ = [
    "Account",
    "AccountRole",
    "BusinessProgress",
    "Redemption",
    "RedemptionStatus",
    "Reward",
    "Transaction",
    "TransactionKind",
    "LoyaltyService",
    "compute_streak_reward",
]

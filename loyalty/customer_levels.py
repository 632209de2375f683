"""
Customer levels, derived from lifetime points earned.

Levels only go up: ``total_points_earned`` never decreases, and the
transaction engine recomputes the level on every EARN.
"""

from typing import Optional

from .models import Account, CustomerLevelInfo

# level -> (name, minimum lifetime points)
CUSTOMER_LEVELS = {
    1: ("Explorer", 0),
    2: ("Regular", 100),
    3: ("Insider", 500),
    4: ("Ambassador", 2000),
}

MAX_CUSTOMER_LEVEL = max(CUSTOMER_LEVELS)


def customer_level_for_points(total_points_earned: int) -> int:
    reached = [
        level for level, (_, min_points) in CUSTOMER_LEVELS.items()
        if total_points_earned >= min_points
    ]
    return max(reached, default=1)


def points_to_next_customer_level(total_points_earned: int) -> Optional[int]:
    level = customer_level_for_points(total_points_earned)
    if level >= MAX_CUSTOMER_LEVEL:
        return None
    return CUSTOMER_LEVELS[level + 1][1] - total_points_earned


def describe_customer_level(account: Account) -> CustomerLevelInfo:
    return CustomerLevelInfo(
        account_id=account.account_id,
        level=account.level,
        level_name=CUSTOMER_LEVELS[account.level][0],
        total_points_earned=account.total_points_earned,
        points_to_next_level=points_to_next_customer_level(account.total_points_earned),
    )

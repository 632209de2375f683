"""
Daily login streaks.

``compute_streak_reward`` is the pure calculator; ``StreakService`` wires it
to the idempotency guard and the transaction engine so that a streak day is
paid out at most once.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from .errors import AccountNotFoundError, InvalidRequestError
from .idempotency import IdempotencyGuard, streak_key
from .models import StreakClaimResult, StreakReward, TransactionKind
from .redemptions import as_utc
from .storage import LedgerStore, StoreTransaction
from .transactions import TransactionEngine

logger = structlog.get_logger("loyalty.streaks")

BASE_POINTS = 5
WEEKLY_BONUS = 5
WEEKLY_BONUS_CAP = 50
MILESTONE_BONUSES = {
    3: 20,
    7: 50,
    14: 100,
    30: 250,
    60: 500,
    100: 1000,
}


def compute_streak_reward(
    previous_streak_length: int,
    last_login_date: Optional[date],
    today: date,
) -> StreakReward:
    if last_login_date == today:
        raise InvalidRequestError("Streak already counted for today")

    if last_login_date is not None and today - last_login_date == timedelta(days=1):
        new_streak_length = previous_streak_length + 1
    else:
        new_streak_length = 1

    bonus_points = min((new_streak_length // 7) * WEEKLY_BONUS, WEEKLY_BONUS_CAP)
    milestone_bonus = MILESTONE_BONUSES.get(new_streak_length, 0)
    return StreakReward(
        new_streak_length=new_streak_length,
        base_points=BASE_POINTS,
        bonus_points=bonus_points,
        milestone_bonus=milestone_bonus,
        total_points=BASE_POINTS + bonus_points + milestone_bonus,
    )


class StreakService:
    def __init__(
        self,
        storage: LedgerStore,
        engine: TransactionEngine,
        guard: IdempotencyGuard,
        tz: str = "UTC",
    ):
        self.storage = storage
        self.engine = engine
        self.guard = guard
        self.tz = ZoneInfo(tz)

    def local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def claim_daily_streak(self, account_id: str, now: Optional[datetime] = None) -> StreakClaimResult:
        now = as_utc(now or datetime.now(timezone.utc))
        today = self.local_date(now)

        def _claim(txn: StoreTransaction) -> StreakClaimResult:
            account_data = txn.get("accounts", account_id)
            if account_data is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            streak = account_data["streak"]

            if not self.guard.claim(txn, account_id, streak_key(account_id, today), now=now):
                return StreakClaimResult(
                    account_id=account_id,
                    already_claimed_today=True,
                    new_streak_length=streak["login_streak"],
                )

            last_login = streak["last_login_at"]
            last_login_date = self.local_date(as_utc(last_login)) if last_login else None
            reward = compute_streak_reward(streak["login_streak"], last_login_date, today)

            description = f"Daily login reward ({reward.new_streak_length} day streak)"
            if reward.milestone_bonus:
                description += f" + {reward.milestone_bonus} milestone bonus"
            transaction = self.engine.apply(
                txn,
                account_id,
                reward.total_points,
                TransactionKind.EARN,
                description,
                related_entity_id=f"daily_streak_{reward.new_streak_length}",
                now=now,
            )

            # Re-read: the engine has just written the balance.
            account_data = txn.get("accounts", account_id)
            account_data["streak"] = {
                "login_streak": reward.new_streak_length,
                "longest_login_streak": max(reward.new_streak_length, streak["longest_login_streak"]),
                "last_login_at": now,
                "last_streak_reward_claimed": today,
                "total_streak_points_earned": streak["total_streak_points_earned"] + reward.total_points,
            }
            txn.set("accounts", account_id, account_data)

            return StreakClaimResult(
                account_id=account_id,
                already_claimed_today=False,
                new_streak_length=reward.new_streak_length,
                total_points=reward.total_points,
                milestone_reached=reward.milestone_bonus > 0,
                breakdown=reward,
                transaction=transaction,
            )

        result = self.storage.run_transaction(_claim)
        if result.already_claimed_today:
            logger.info("daily_streak_already_claimed", account_id=account_id, day=today.isoformat())
        else:
            logger.info(
                "daily_streak_claimed",
                account_id=account_id,
                streak=result.new_streak_length,
                points=result.total_points,
                milestone_reached=result.milestone_reached,
            )
        return result

"""
Redemption State Machine

    PENDING -> APPROVED -> USED
    PENDING -> USED            (rewards without an approval step)
    PENDING | APPROVED -> EXPIRED | CANCELLED

USED, EXPIRED and CANCELLED are terminal. Every mutation consults
``TRANSITIONS`` before writing, and expiry is evaluated against the wall
clock on every read or mutation rather than by a timer.
"""

import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import structlog

from .errors import (
    AccountNotFoundError,
    EligibilityNotMetError,
    InvalidStateTransitionError,
    RedemptionLimitReachedError,
    RedemptionNotFoundError,
    RewardExpiredError,
    RewardInactiveError,
    RewardNotFoundError,
    RewardSoldOutError,
    UnauthorizedError,
)
from .idempotency import IdempotencyGuard, claim_id, redemption_click_key
from .models import (
    ExpiredRedemptionPolicy,
    Redemption,
    RedemptionFrequency,
    RedemptionStatus,
    Reward,
    TransactionKind,
)
from .storage import LedgerStore, StoreTransaction
from .transactions import TransactionEngine

logger = structlog.get_logger("loyalty.redemptions")

TRANSITIONS = {
    RedemptionStatus.PENDING: frozenset({
        RedemptionStatus.APPROVED,
        RedemptionStatus.USED,
        RedemptionStatus.EXPIRED,
        RedemptionStatus.CANCELLED,
    }),
    RedemptionStatus.APPROVED: frozenset({
        RedemptionStatus.USED,
        RedemptionStatus.EXPIRED,
        RedemptionStatus.CANCELLED,
    }),
    RedemptionStatus.USED: frozenset(),
    RedemptionStatus.EXPIRED: frozenset(),
    RedemptionStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

FREQUENCY_WINDOWS = {
    RedemptionFrequency.ONCE_PER_DAY: timedelta(days=1),
    RedemptionFrequency.ONCE_PER_WEEK: timedelta(days=7),
    RedemptionFrequency.ONCE_PER_MONTH: timedelta(days=30),
}

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def check_transition(redemption: Redemption, target: RedemptionStatus) -> None:
    if target not in TRANSITIONS[redemption.status]:
        raise InvalidStateTransitionError(
            f"Cannot move redemption {redemption.redemption_id} from {redemption.status.value} to {target.value}"
        )
    if (
        target == RedemptionStatus.USED
        and redemption.status == RedemptionStatus.PENDING
        and redemption.requires_approval
    ):
        raise InvalidStateTransitionError(
            f"Redemption {redemption.redemption_id} must be approved before it can be used"
        )


def is_lapsed(redemption: Redemption, now: datetime) -> bool:
    return redemption.status not in TERMINAL_STATES and now > as_utc(redemption.expires_at)


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_coupon_code(reward_id: UUID, now: datetime) -> str:
    reward_part = reward_id.hex[:4].upper()
    random_part = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"{reward_part}-{random_part}-{_base36(int(now.timestamp() * 1000))}"


class RedemptionService:
    def __init__(
        self,
        storage: LedgerStore,
        engine: TransactionEngine,
        guard: IdempotencyGuard,
        tz: str = "UTC",
        default_expiry_days: int = 30,
        expired_policy: ExpiredRedemptionPolicy = ExpiredRedemptionPolicy.FORFEIT,
        click_window_seconds: int = 10,
    ):
        self.storage = storage
        self.engine = engine
        self.guard = guard
        self.tz = ZoneInfo(tz)
        self.default_expiry_days = default_expiry_days
        self.expired_policy = ExpiredRedemptionPolicy(expired_policy)
        self.click_window_seconds = click_window_seconds

    # -----------------------------
    # Redeem
    # -----------------------------
    def redeem(
        self,
        user_id: str,
        reward_id: UUID,
        dedupe: bool = False,
        now: Optional[datetime] = None,
    ) -> Redemption:
        now = now or datetime.now(timezone.utc)
        redemption_id = uuid4()
        click_key = (
            redemption_click_key(user_id, str(reward_id), now, self.click_window_seconds)
            if dedupe else None
        )

        def _redeem(txn: StoreTransaction) -> tuple[Redemption, bool]:
            if click_key is not None:
                previous = txn.get("claims", claim_id(user_id, click_key))
                if previous is not None:
                    return Redemption(**txn.get("redemptions", previous["related_entity_id"])), True

            reward_data = txn.get("rewards", str(reward_id))
            if reward_data is None:
                raise RewardNotFoundError(f"Reward {reward_id} not found")
            reward = Reward(**reward_data)
            customer = txn.get("accounts", user_id)
            if customer is None:
                raise AccountNotFoundError(f"Account {user_id} not found")

            self._check_reward(txn, reward, customer, now)

            if reward.unlimited:
                txn.update("rewards", str(reward_id), claimed=reward.claimed + 1)
            elif not txn.increment_if_below("rewards", str(reward_id), "claimed", "total_available"):
                raise RewardSoldOutError(f"Reward {reward_id} is sold out")

            self.engine.transfer(
                txn,
                user_id,
                reward.business_id,
                reward.points_cost,
                f"Redeemed reward: {reward.title}",
                related_entity_id=str(redemption_id),
                now=now,
            )
            if click_key is not None:
                self.guard.claim(txn, user_id, click_key, related_entity_id=str(redemption_id), now=now)

            redemption = Redemption(
                redemption_id=redemption_id,
                user_id=user_id,
                reward_id=reward.reward_id,
                business_id=reward.business_id,
                points_spent=reward.points_cost,
                coupon_code=generate_coupon_code(reward.reward_id, now),
                status=RedemptionStatus.PENDING,
                requires_approval=reward.requires_approval,
                redeemed_at=now,
                expires_at=now + timedelta(days=reward.expiry_days or self.default_expiry_days),
            )
            txn.set("redemptions", str(redemption_id), redemption.model_dump())
            return redemption, False

        redemption, duplicate = self.storage.run_transaction(_redeem)
        if duplicate:
            logger.info(
                "redemption_duplicate_click",
                user_id=user_id,
                reward_id=str(reward_id),
                redemption_id=str(redemption.redemption_id),
            )
        else:
            logger.info(
                "reward_redeemed",
                user_id=user_id,
                reward_id=str(reward_id),
                business_id=redemption.business_id,
                redemption_id=str(redemption.redemption_id),
                points_spent=redemption.points_spent,
            )
        return redemption

    def _check_reward(self, txn: StoreTransaction, reward: Reward, customer: dict, now: datetime) -> None:
        if not reward.active:
            raise RewardInactiveError(f"Reward {reward.reward_id} is not active")
        if reward.valid_from is not None and now < as_utc(reward.valid_from):
            raise RewardInactiveError(f"Reward {reward.reward_id} is not available yet")
        for deadline in (reward.valid_until, reward.expires_at):
            if deadline is not None and now > as_utc(deadline):
                raise RewardExpiredError(f"Reward {reward.reward_id} has expired")
        if not reward.unlimited and reward.claimed >= reward.total_available:
            raise RewardSoldOutError(f"Reward {reward.reward_id} is sold out")

        if customer["level"] < reward.level_required:
            raise EligibilityNotMetError(
                f"Reward {reward.reward_id} requires level {reward.level_required}"
            )
        local = now.astimezone(self.tz)
        if reward.available_days is not None and local.weekday() not in reward.available_days:
            raise EligibilityNotMetError(f"Reward {reward.reward_id} is not available today")
        if not self._within_hours(reward, local):
            raise EligibilityNotMetError(f"Reward {reward.reward_id} is not available at this time")
        self._check_frequency(txn, reward, customer["account_id"], now)

    @staticmethod
    def _within_hours(reward: Reward, local: datetime) -> bool:
        start, end = reward.available_from, reward.available_until
        if start is None and end is None:
            return True
        clock = local.time().replace(tzinfo=None)
        if start is None:
            return clock < end
        if end is None:
            return clock >= start
        if start <= end:
            return start <= clock < end
        # Window crosses midnight, e.g. 22:00-02:00.
        return clock >= start or clock < end

    def _check_frequency(self, txn: StoreTransaction, reward: Reward, user_id: str, now: datetime) -> None:
        if reward.redemption_frequency == RedemptionFrequency.UNLIMITED:
            return
        previous = txn.select(
            "redemptions",
            lambda r: (
                r["user_id"] == user_id
                and r["reward_id"] == reward.reward_id
                and r["status"] != RedemptionStatus.CANCELLED
            ),
        )
        if not previous:
            return
        if reward.redemption_frequency == RedemptionFrequency.ONCE:
            raise RedemptionLimitReachedError(f"Reward {reward.reward_id} can only be redeemed once")

        last = max(as_utc(r["redeemed_at"]) for r in previous)
        window = FREQUENCY_WINDOWS[reward.redemption_frequency]
        if now - last < window:
            raise RedemptionLimitReachedError(
                f"Reward {reward.reward_id} can be redeemed again after {(last + window).isoformat()}"
            )

    # -----------------------------
    # Transitions
    # -----------------------------
    def approve(self, redemption_id: UUID, business_user_id: str, now: Optional[datetime] = None) -> Redemption:
        now = now or datetime.now(timezone.utc)

        def _apply(txn: StoreTransaction, redemption: Redemption) -> dict:
            check_transition(redemption, RedemptionStatus.APPROVED)
            return {"status": RedemptionStatus.APPROVED, "approved_at": now}

        redemption = self._transition(redemption_id, business_user_id, _apply, now)
        logger.info("redemption_approved", redemption_id=str(redemption_id), business_id=business_user_id)
        return redemption

    def mark_used(self, redemption_id: UUID, business_user_id: str, now: Optional[datetime] = None) -> Redemption:
        now = now or datetime.now(timezone.utc)

        def _apply(txn: StoreTransaction, redemption: Redemption) -> dict:
            check_transition(redemption, RedemptionStatus.USED)
            return {"status": RedemptionStatus.USED, "used_at": now, "used_by": business_user_id}

        redemption = self._transition(redemption_id, business_user_id, _apply, now)
        logger.info("redemption_used", redemption_id=str(redemption_id), used_by=business_user_id)
        return redemption

    def mark_used_by_code(self, coupon_code: str, business_user_id: str, now: Optional[datetime] = None) -> Redemption:
        code = coupon_code.strip().upper()
        matches = self.storage.select("redemptions", lambda r: r["coupon_code"] == code)
        if not matches:
            raise RedemptionNotFoundError(f"No redemption with coupon code {code}")
        return self.mark_used(matches[0]["redemption_id"], business_user_id, now)

    def cancel(self, redemption_id: UUID, now: Optional[datetime] = None) -> Redemption:
        now = now or datetime.now(timezone.utc)

        def _apply(txn: StoreTransaction, redemption: Redemption) -> dict:
            check_transition(redemption, RedemptionStatus.CANCELLED)
            self._refund(txn, redemption, "Cancelled redemption", now)
            reward_data = txn.get("rewards", str(redemption.reward_id))
            if reward_data is not None and reward_data["claimed"] > 0:
                txn.update("rewards", str(redemption.reward_id), claimed=reward_data["claimed"] - 1)
            return {"status": RedemptionStatus.CANCELLED, "cancelled_at": now}

        redemption = self._transition(redemption_id, None, _apply, now)
        logger.info(
            "redemption_cancelled",
            redemption_id=str(redemption_id),
            user_id=redemption.user_id,
            refunded=redemption.points_spent,
        )
        return redemption

    def expire_stale(self, now: Optional[datetime] = None) -> list[Redemption]:
        """Move every lapsed PENDING/APPROVED redemption to EXPIRED."""
        now = now or datetime.now(timezone.utc)
        candidates = self.storage.select(
            "redemptions", lambda r: is_lapsed(Redemption(**r), now)
        )
        expired = []
        for data in candidates:
            redemption = self.storage.run_transaction(
                lambda txn, key=str(data["redemption_id"]): self._expire_in(txn, key, now)
            )
            if redemption is not None:
                expired.append(redemption)
        logger.info("stale_redemptions_expired", count=len(expired), policy=self.expired_policy.value)
        return expired

    def _expire_in(self, txn: StoreTransaction, key: str, now: datetime) -> Optional[Redemption]:
        data = txn.get("redemptions", key)
        redemption = Redemption(**data)
        if not is_lapsed(redemption, now):
            # Already handled by a concurrent sweep or caller.
            return None
        return self._expire(txn, redemption, now)

    def _expire(self, txn: StoreTransaction, redemption: Redemption, now: datetime) -> Redemption:
        check_transition(redemption, RedemptionStatus.EXPIRED)
        update = {"status": RedemptionStatus.EXPIRED, "expired_at": now}
        if self.expired_policy == ExpiredRedemptionPolicy.REFUND:
            business = txn.get("accounts", redemption.business_id)
            if business is not None and business["point_balance"] >= redemption.points_spent:
                self._refund(txn, redemption, "Expired redemption", now)
            else:
                # Expire anyway; the shortfall stays on the redemption record.
                update["unrefunded_points"] = redemption.points_spent
                logger.warning(
                    "redemption_expiry_refund_failed",
                    redemption_id=str(redemption.redemption_id),
                    business_id=redemption.business_id,
                    unrefunded_points=redemption.points_spent,
                )
        expired = redemption.model_copy(update=update)
        txn.set("redemptions", str(redemption.redemption_id), expired.model_dump())
        return expired

    def _refund(self, txn: StoreTransaction, redemption: Redemption, reason: str, now: datetime) -> None:
        self.engine.transfer(
            txn,
            redemption.business_id,
            redemption.user_id,
            redemption.points_spent,
            f"{reason}: refund",
            related_entity_id=str(redemption.redemption_id),
            now=now,
            kind_pair=(TransactionKind.REFUND, TransactionKind.REFUND),
        )

    def _transition(self, redemption_id, actor_id: Optional[str], apply, now: datetime) -> Redemption:
        def _run(txn: StoreTransaction) -> tuple[Redemption, bool]:
            data = txn.get("redemptions", str(redemption_id))
            if data is None:
                raise RedemptionNotFoundError(f"Redemption {redemption_id} not found")
            redemption = Redemption(**data)
            if actor_id is not None and redemption.business_id != actor_id:
                raise UnauthorizedError(
                    f"{actor_id} cannot manage redemptions of business {redemption.business_id}"
                )
            if is_lapsed(redemption, now):
                return self._expire(txn, redemption, now), True
            updated = redemption.model_copy(update=apply(txn, redemption))
            txn.set("redemptions", str(redemption_id), updated.model_dump())
            return updated, False

        redemption, lapsed = self.storage.run_transaction(_run)
        if lapsed:
            logger.info("redemption_expired_on_access", redemption_id=str(redemption_id))
            raise InvalidStateTransitionError(f"Redemption {redemption_id} has expired")
        return redemption

    # -----------------------------
    # Queries
    # -----------------------------
    def get_redemption(self, redemption_id: UUID, now: Optional[datetime] = None) -> Redemption:
        now = now or datetime.now(timezone.utc)
        data = self.storage.get("redemptions", str(redemption_id))
        if data is None:
            raise RedemptionNotFoundError(f"Redemption {redemption_id} not found")
        redemption = Redemption(**data)
        if is_lapsed(redemption, now):
            expired = self.storage.run_transaction(
                lambda txn: self._expire_in(txn, str(redemption_id), now)
            )
            if expired is not None:
                return expired
            return Redemption(**self.storage.get("redemptions", str(redemption_id)))
        return redemption

    def list_redemptions(
        self,
        user_id: Optional[str] = None,
        business_id: Optional[str] = None,
        status: Optional[RedemptionStatus] = None,
    ) -> list[Redemption]:
        redemptions = [
            Redemption(**r) for r in self.storage.select(
                "redemptions",
                lambda r: (
                    (user_id is None or r["user_id"] == user_id)
                    and (business_id is None or r["business_id"] == business_id)
                    and (status is None or r["status"] == status)
                ),
            )
        ]
        redemptions.sort(key=lambda r: r.redeemed_at, reverse=True)
        return redemptions

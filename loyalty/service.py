from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .config import Settings, get_settings
from .customer_levels import describe_customer_level
from .errors import (
    AccountNotFoundError,
    InvalidRequestError,
    RewardNotFoundError,
    UnauthorizedError,
)
from .idempotency import IdempotencyGuard, mission_key
from .models import (
    Account,
    AccountRole,
    AdminAuditEntry,
    BusinessProgress,
    ConversionResult,
    CreateRewardRequest,
    CustomerLevelInfo,
    LedgerHistoryResponse,
    PendingUpgrade,
    Redemption,
    RedemptionStatus,
    Reward,
    StreakClaimResult,
    Transaction,
    TransactionKind,
)
from .progression import BusinessProgressionEngine
from .redemptions import RedemptionService
from .storage import InMemoryStorage, LedgerStore, StoreTransaction
from .streaks import StreakService
from .transactions import TransactionEngine

logger = structlog.get_logger("loyalty.service")


class LoyaltyService:
    """Entry point for every ledger, redemption, streak and progression operation."""

    def __init__(self, storage: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.engine = TransactionEngine(self.storage)
        self.guard = IdempotencyGuard(self.storage)
        self.redemptions = RedemptionService(
            self.storage,
            self.engine,
            self.guard,
            tz=self.settings.timezone,
            default_expiry_days=self.settings.redemption_expiry_days,
            expired_policy=self.settings.expired_redemption_policy,
            click_window_seconds=self.settings.redeem_click_window_seconds,
        )
        self.streaks = StreakService(self.storage, self.engine, self.guard, tz=self.settings.timezone)
        self.progression = BusinessProgressionEngine(self.storage)

    # -----------------------------
    # Accounts
    # -----------------------------
    def open_account(self, account_id: str, role: AccountRole, now: Optional[datetime] = None) -> Account:
        """Create the ledger account for an identity; existing accounts are returned as-is."""
        role = AccountRole(role)
        account = Account(
            account_id=account_id,
            role=role,
            business=BusinessProgress() if role == AccountRole.BUSINESS else None,
            created_at=now or datetime.now(timezone.utc),
        )

        def _open(txn: StoreTransaction) -> tuple[Account, bool]:
            if txn.create("accounts", account_id, account.model_dump()):
                return account, True
            return Account(**txn.get("accounts", account_id)), False

        result, created = self.storage.run_transaction(_open)
        if created:
            logger.info("account_opened", account_id=account_id, role=role.value)
        return result

    def get_account(self, account_id: str) -> Account:
        return self.engine.get_account(account_id)

    def get_balance(self, account_id: str) -> int:
        return self.engine.get_account(account_id).point_balance

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return self.engine.history(account_id, limit, offset)

    def get_customer_level(self, account_id: str) -> CustomerLevelInfo:
        """Level earned from lifetime points; it gates rewards with a level requirement."""
        account = self.engine.get_account(account_id)
        if account.role != AccountRole.CUSTOMER:
            raise AccountNotFoundError(f"Customer {account_id} not found")
        return describe_customer_level(account)

    # -----------------------------
    # Points
    # -----------------------------
    def award_points(
        self,
        account_id: str,
        amount: int,
        reason: str,
        related_entity_id: Optional[str] = None,
    ) -> Transaction:
        if amount <= 0:
            raise InvalidRequestError("Awarded points must be positive")
        return self.engine.apply_transaction(account_id, amount, TransactionKind.EARN, reason, related_entity_id)

    def spend_points(
        self,
        account_id: str,
        amount: int,
        reason: str,
        related_entity_id: Optional[str] = None,
    ) -> Transaction:
        if amount <= 0:
            raise InvalidRequestError("Spent points must be positive")
        return self.engine.apply_transaction(account_id, -amount, TransactionKind.SPEND, reason, related_entity_id)

    def award_mission_points(self, account_id: str, mission_id: str, amount: int) -> Optional[Transaction]:
        """Pay a mission reward once; returns None if it was already paid."""
        if amount <= 0:
            raise InvalidRequestError("Awarded points must be positive")

        def _award(txn: StoreTransaction) -> Optional[Transaction]:
            if not self.guard.claim(txn, account_id, mission_key(mission_id), related_entity_id=mission_id):
                return None
            return self.engine.apply(
                txn, account_id, amount, TransactionKind.EARN, f"Mission completed: {mission_id}", mission_id
            )

        transaction = self.storage.run_transaction(_award)
        if transaction is not None:
            logger.info("mission_points_awarded", account_id=account_id, mission_id=mission_id, amount=amount)
        return transaction

    def convert_points(self, business_id: str, points: int) -> ConversionResult:
        """Turn business points into subscription credit."""
        if points <= 0:
            raise InvalidRequestError("Converted points must be positive")
        credit = (Decimal(points) / Decimal(self.settings.points_per_credit_unit)).quantize(Decimal("0.01"))

        def _convert(txn: StoreTransaction) -> ConversionResult:
            account_data = txn.get("accounts", business_id)
            if account_data is None:
                raise AccountNotFoundError(f"Account {business_id} not found")
            if account_data["role"] != AccountRole.BUSINESS:
                raise UnauthorizedError(f"Only business accounts can convert points ({business_id})")
            transaction = self.engine.apply(
                txn, business_id, -points, TransactionKind.CONVERSION, f"Converted to {credit} subscription credit"
            )
            account_data = txn.get("accounts", business_id)
            account_data["subscription_credit"] = account_data["subscription_credit"] + credit
            txn.set("accounts", business_id, account_data)
            return ConversionResult(
                transaction=transaction,
                credit_added=credit,
                subscription_credit=account_data["subscription_credit"],
            )

        result = self.storage.run_transaction(_convert)
        logger.info("points_converted", business_id=business_id, points=points, credit=str(credit))
        return result

    # -----------------------------
    # Rewards & redemptions
    # -----------------------------
    def publish_reward(self, request: CreateRewardRequest, now: Optional[datetime] = None) -> Reward:
        business = self.engine.get_account(request.business_id)
        if business.role != AccountRole.BUSINESS:
            raise UnauthorizedError(f"Only business accounts can publish rewards ({request.business_id})")
        reward = Reward(
            reward_id=uuid4(),
            created_at=now or datetime.now(timezone.utc),
            **request.model_dump(),
        )
        self.storage.run_transaction(
            lambda txn: txn.set("rewards", str(reward.reward_id), reward.model_dump())
        )
        logger.info(
            "reward_published",
            reward_id=str(reward.reward_id),
            business_id=reward.business_id,
            points_cost=reward.points_cost,
        )
        return reward

    def get_reward(self, reward_id: UUID) -> Reward:
        data = self.storage.get("rewards", str(reward_id))
        if data is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return Reward(**data)

    def deactivate_reward(self, reward_id: UUID, business_user_id: str) -> Reward:
        def _deactivate(txn: StoreTransaction) -> Reward:
            data = txn.get("rewards", str(reward_id))
            if data is None:
                raise RewardNotFoundError(f"Reward {reward_id} not found")
            if data["business_id"] != business_user_id:
                raise UnauthorizedError(f"{business_user_id} does not own reward {reward_id}")
            return Reward(**txn.update("rewards", str(reward_id), active=False))

        reward = self.storage.run_transaction(_deactivate)
        logger.info("reward_deactivated", reward_id=str(reward_id), business_id=business_user_id)
        return reward

    def redeem_reward(self, user_id: str, reward_id: UUID, dedupe: bool = False) -> Redemption:
        return self.redemptions.redeem(user_id, reward_id, dedupe=dedupe)

    def approve_redemption(self, redemption_id: UUID, business_user_id: str) -> Redemption:
        return self.redemptions.approve(redemption_id, business_user_id)

    def mark_redemption_used(self, redemption_id: UUID, business_user_id: str) -> Redemption:
        return self.redemptions.mark_used(redemption_id, business_user_id)

    def validate_coupon(self, coupon_code: str, business_user_id: str) -> Redemption:
        return self.redemptions.mark_used_by_code(coupon_code, business_user_id)

    def cancel_redemption(self, redemption_id: UUID) -> Redemption:
        return self.redemptions.cancel(redemption_id)

    def expire_stale_redemptions(self) -> list[Redemption]:
        return self.redemptions.expire_stale()

    def get_redemption(self, redemption_id: UUID) -> Redemption:
        return self.redemptions.get_redemption(redemption_id)

    def list_redemptions(
        self,
        user_id: Optional[str] = None,
        business_id: Optional[str] = None,
        status: Optional[RedemptionStatus] = None,
    ) -> list[Redemption]:
        return self.redemptions.list_redemptions(user_id, business_id, status)

    # -----------------------------
    # Streaks
    # -----------------------------
    def claim_daily_streak(self, account_id: str) -> StreakClaimResult:
        return self.streaks.claim_daily_streak(account_id)

    # -----------------------------
    # Business progression
    # -----------------------------
    def award_business_xp(self, business_id: str, amount: int, reason: Optional[str] = None) -> BusinessProgress:
        return self.progression.award_xp(business_id, amount, reason)

    def get_business_progress(self, business_id: str) -> BusinessProgress:
        return self.progression.get_progress(business_id)

    def request_business_upgrade(self, business_id: str) -> BusinessProgress:
        return self.progression.request_upgrade(business_id)

    def approve_business_upgrade(self, business_id: str, admin_id: str) -> BusinessProgress:
        return self.progression.approve_upgrade(business_id, admin_id)

    def reject_business_upgrade(self, business_id: str, admin_id: str, reason: str) -> BusinessProgress:
        return self.progression.reject_upgrade(business_id, admin_id, reason)

    def list_pending_upgrades(self) -> list[PendingUpgrade]:
        return self.progression.list_pending_upgrades()

    def list_admin_actions(self, target_id: Optional[str] = None) -> list[AdminAuditEntry]:
        return self.progression.list_admin_actions(target_id)

"""
Business Progression

Two-tier business levels:

- Main level (1-6) only moves by admin approval.
- Sub-level (1-9) is derived from XP after every XP change. At sub-level 9 a
  business may ask for promotion to the next main level.

XP is a separate counter from points and never goes through the
transaction engine.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from .errors import (
    AccountNotFoundError,
    InvalidRequestError,
    MissingReasonError,
    NoPendingRequestError,
    NotEligibleError,
)
from .models import (
    AccountRole,
    AdminAction,
    AdminAuditEntry,
    BusinessProgress,
    PendingUpgrade,
)
from .storage import LedgerStore, StoreTransaction

logger = structlog.get_logger("loyalty.progression")

MAX_LEVEL = 6
MAX_SUB_LEVEL = 9

BUSINESS_LEVELS = {
    1: "Explorer",
    2: "Builder",
    3: "Operator",
    4: "Growth Leader",
    5: "Expert",
    6: "Elite",
}

# Cumulative XP needed for each sub-level within one main level.
SUB_LEVEL_THRESHOLDS = (0, 20, 50, 90, 140, 200, 270, 350, 440)

XP_REWARDS = {
    "MISSION_CREATED_FIRST": 50,
    "MISSION_CREATED": 30,
    "MISSION_COMPLETED": 30,
    "GOOGLE_REVIEW_MISSION": 20,
    "MEETUP_HOSTED": 40,
    "MEETUP_HOSTED_3_PLUS": 70,
    "EVENT_HOSTED": 40,
    "EVENT_HOSTED_5_PLUS": 100,
}


def sub_level_for_xp(xp: int) -> int:
    crossed = sum(1 for threshold in SUB_LEVEL_THRESHOLDS if xp >= threshold)
    return max(1, min(crossed, MAX_SUB_LEVEL))


def xp_for_next_sub_level(xp: int) -> int:
    sub_level = sub_level_for_xp(xp)
    if sub_level >= MAX_SUB_LEVEL:
        return 0
    return SUB_LEVEL_THRESHOLDS[sub_level] - xp


def level_display(level: int, sub_level: int) -> str:
    return f"{level}.{sub_level}"


def level_name(level: int) -> str:
    return BUSINESS_LEVELS.get(level, "Unknown")


def can_request_upgrade(progress: BusinessProgress) -> bool:
    return progress.business_sub_level == MAX_SUB_LEVEL and progress.business_level < MAX_LEVEL


class BusinessProgressionEngine:
    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def get_progress(self, business_id: str) -> BusinessProgress:
        data = self.storage.get("accounts", business_id)
        if data is None or data["role"] != AccountRole.BUSINESS:
            raise AccountNotFoundError(f"Business {business_id} not found")
        return BusinessProgress(**data["business"])

    def award_xp(
        self,
        business_id: str,
        amount: int,
        reason: Optional[str] = None,
    ) -> BusinessProgress:
        if amount <= 0:
            raise InvalidRequestError("XP amount must be positive")

        def _award(txn: StoreTransaction) -> tuple[BusinessProgress, int]:
            account_data, progress = self._load(txn, business_id)
            previous_sub_level = progress.business_sub_level
            progress.business_xp += amount
            progress.business_sub_level = sub_level_for_xp(progress.business_xp)
            self._save(txn, account_data, progress)
            return progress, previous_sub_level

        progress, previous_sub_level = self.storage.run_transaction(_award)
        logger.info(
            "business_xp_awarded",
            business_id=business_id,
            amount=amount,
            reason=reason,
            xp=progress.business_xp,
            level=level_display(progress.business_level, progress.business_sub_level),
        )
        if progress.business_sub_level != previous_sub_level:
            logger.info(
                "business_sub_level_reached",
                business_id=business_id,
                level=level_display(progress.business_level, progress.business_sub_level),
            )
        return progress

    def request_upgrade(self, business_id: str, now: Optional[datetime] = None) -> BusinessProgress:
        now = now or datetime.now(timezone.utc)

        def _request(txn: StoreTransaction) -> BusinessProgress:
            account_data, progress = self._load(txn, business_id)
            if progress.business_level >= MAX_LEVEL:
                raise NotEligibleError(f"Business {business_id} is already at the maximum level")
            if progress.business_sub_level != MAX_SUB_LEVEL:
                raise NotEligibleError(
                    f"Business {business_id} must reach sub-level {MAX_SUB_LEVEL} "
                    f"(currently {level_display(progress.business_level, progress.business_sub_level)})"
                )
            if not progress.upgrade_requested:
                progress.upgrade_requested = True
                progress.upgrade_requested_at = now
                self._save(txn, account_data, progress)
            return progress

        progress = self.storage.run_transaction(_request)
        logger.info(
            "business_upgrade_requested",
            business_id=business_id,
            current_level=level_display(progress.business_level, progress.business_sub_level),
            target_level=progress.business_level + 1,
        )
        return progress

    def approve_upgrade(
        self,
        business_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> BusinessProgress:
        now = now or datetime.now(timezone.utc)

        def _approve(txn: StoreTransaction) -> BusinessProgress:
            account_data, progress = self._load(txn, business_id)
            if not progress.upgrade_requested:
                raise NoPendingRequestError(f"No upgrade request pending for {business_id}")
            if progress.business_level >= MAX_LEVEL:
                raise NotEligibleError(f"Business {business_id} is already at the maximum level")

            previous_level = progress.business_level
            progress.business_level += 1
            progress.business_sub_level = 1
            progress.business_xp = 0
            progress.upgrade_requested = False
            progress.upgrade_requested_at = None
            progress.upgrade_approved_at = now
            progress.last_upgrade_approved_by = admin_id
            self._save(txn, account_data, progress)
            self._audit(
                txn,
                AdminAction.APPROVE_BUSINESS_UPGRADE,
                admin_id,
                business_id,
                now,
                details={"from_level": previous_level, "to_level": progress.business_level},
            )
            return progress

        progress = self.storage.run_transaction(_approve)
        logger.info(
            "business_upgrade_approved",
            business_id=business_id,
            admin_id=admin_id,
            new_level=progress.business_level,
            level_name=level_name(progress.business_level),
        )
        return progress

    def reject_upgrade(
        self,
        business_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> BusinessProgress:
        if not reason or not reason.strip():
            raise MissingReasonError("A reason is required to reject an upgrade request")
        reason = reason.strip()
        now = now or datetime.now(timezone.utc)

        def _reject(txn: StoreTransaction) -> BusinessProgress:
            account_data, progress = self._load(txn, business_id)
            if not progress.upgrade_requested:
                raise NoPendingRequestError(f"No upgrade request pending for {business_id}")

            progress.upgrade_requested = False
            progress.upgrade_requested_at = None
            progress.last_upgrade_rejected_by = admin_id
            progress.last_upgrade_rejected_at = now
            progress.last_upgrade_rejection_reason = reason
            self._save(txn, account_data, progress)
            self._audit(
                txn,
                AdminAction.REJECT_BUSINESS_UPGRADE,
                admin_id,
                business_id,
                now,
                reason=reason,
                details={"level": progress.business_level},
            )
            return progress

        progress = self.storage.run_transaction(_reject)
        logger.info(
            "business_upgrade_rejected",
            business_id=business_id,
            admin_id=admin_id,
            reason=reason,
        )
        return progress

    def list_pending_upgrades(self) -> list[PendingUpgrade]:
        pending = [
            PendingUpgrade(
                business_id=data["account_id"],
                business_level=data["business"]["business_level"],
                business_sub_level=data["business"]["business_sub_level"],
                business_xp=data["business"]["business_xp"],
                requested_at=data["business"]["upgrade_requested_at"],
            )
            for data in self.storage.select(
                "accounts",
                lambda a: a["business"] is not None and a["business"]["upgrade_requested"],
            )
        ]
        pending.sort(key=lambda p: p.requested_at)
        return pending

    def list_admin_actions(self, target_id: Optional[str] = None) -> list[AdminAuditEntry]:
        entries = [
            AdminAuditEntry(**e) for e in self.storage.select(
                "admin_audit", lambda e: target_id is None or e["target_id"] == target_id
            )
        ]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def _load(self, txn: StoreTransaction, business_id: str) -> tuple[dict, BusinessProgress]:
        account_data = txn.get("accounts", business_id)
        if account_data is None or account_data["role"] != AccountRole.BUSINESS:
            raise AccountNotFoundError(f"Business {business_id} not found")
        return account_data, BusinessProgress(**account_data["business"])

    def _save(self, txn: StoreTransaction, account_data: dict, progress: BusinessProgress) -> None:
        account_data["business"] = progress.model_dump()
        txn.set("accounts", account_data["account_id"], account_data)

    def _audit(
        self,
        txn: StoreTransaction,
        action: AdminAction,
        admin_id: str,
        business_id: str,
        now: datetime,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        entry = AdminAuditEntry(
            entry_id=uuid4(),
            action=action,
            actor_id=admin_id,
            target_id=business_id,
            reason=reason,
            details=details or {},
            created_at=now,
        )
        txn.set("admin_audit", str(entry.entry_id), entry.model_dump())

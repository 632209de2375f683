from datetime import date, datetime, timezone
from typing import Optional

import structlog

from .models import ClaimRecord
from .storage import LedgerStore, StoreTransaction

logger = structlog.get_logger("loyalty.idempotency")


def claim_id(account_id: str, claim_key: str) -> str:
    return f"{account_id}_{claim_key}"


def mission_key(mission_id: str) -> str:
    return f"mission:{mission_id}"


def streak_key(account_id: str, day: date) -> str:
    return f"streak:{account_id}:{day.isoformat()}"


def redemption_click_key(user_id: str, reward_id: str, at: datetime, window_seconds: int) -> str:
    bucket = int(at.timestamp()) // window_seconds
    return f"redemption:{user_id}:{reward_id}:{bucket}"


class IdempotencyGuard:
    """At-most-once claims keyed by ``{account_id}_{claim_key}``.

    The claim record is created only if absent, so of two racing requests
    for the same key exactly one sees ``True``.
    """

    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def try_claim(
        self,
        account_id: str,
        claim_key: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.storage.run_transaction(
            lambda txn: self.claim(txn, account_id, claim_key, related_entity_id, now)
        )

    def claim(
        self,
        txn: StoreTransaction,
        account_id: str,
        claim_key: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        record = ClaimRecord(
            claim_id=claim_id(account_id, claim_key),
            account_id=account_id,
            claim_key=claim_key,
            related_entity_id=related_entity_id,
            created_at=now or datetime.now(timezone.utc),
        )
        created = txn.create("claims", record.claim_id, record.model_dump())
        if not created:
            logger.info("duplicate_claim_rejected", account_id=account_id, claim_key=claim_key)
        return created

    def get_claim(self, account_id: str, claim_key: str) -> Optional[ClaimRecord]:
        data = self.storage.get("claims", claim_id(account_id, claim_key))
        return ClaimRecord(**data) if data else None

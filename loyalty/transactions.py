"""
Transaction Engine

The only code path that changes an account's point balance. Each mutation
reads the balance, checks the non-negative precondition, writes the new
balance and appends an immutable Transaction record inside a single store
transaction, so the balance and the log can never disagree.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from .customer_levels import customer_level_for_points
from .errors import AccountNotFoundError, InsufficientBalanceError, InvalidRequestError
from .models import Account, AccountRole, LedgerHistoryResponse, Transaction, TransactionKind
from .storage import LedgerStore, StoreTransaction

logger = structlog.get_logger("loyalty.transactions")

# Sign each kind is allowed to carry. REFUND reverses either side of a transfer.
_ALLOWED_SIGNS = {
    TransactionKind.EARN: (1,),
    TransactionKind.SPEND: (-1,),
    TransactionKind.CONVERSION: (-1,),
    TransactionKind.REFUND: (1, -1),
}


class TransactionEngine:
    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def apply_transaction(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        reason: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        transaction = self.storage.run_transaction(
            lambda txn: self.apply(txn, account_id, amount, kind, reason, related_entity_id, now)
        )
        logger.info(
            "points_transaction_applied",
            account_id=account_id,
            kind=transaction.kind.value,
            amount=amount,
            balance_after=transaction.balance_after,
            related_entity_id=related_entity_id,
        )
        return transaction

    def apply_transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        reason: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Transaction, Transaction]:
        """Move ``amount`` points between two accounts as one unit."""
        def _transfer(txn: StoreTransaction) -> tuple[Transaction, Transaction]:
            return self.transfer(txn, from_account_id, to_account_id, amount, reason, related_entity_id, now)

        return self.storage.run_transaction(_transfer)

    def transfer(
        self,
        txn: StoreTransaction,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        reason: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
        kind_pair: tuple[TransactionKind, TransactionKind] = (TransactionKind.SPEND, TransactionKind.EARN),
    ) -> tuple[Transaction, Transaction]:
        if amount <= 0:
            raise InvalidRequestError("Transfer amount must be positive")
        # Debit first: it is the leg carrying the balance precondition.
        debit = self.apply(txn, from_account_id, -amount, kind_pair[0], reason, related_entity_id, now)
        credit = self.apply(txn, to_account_id, amount, kind_pair[1], reason, related_entity_id, now)
        return debit, credit

    def apply(
        self,
        txn: StoreTransaction,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        reason: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Apply one mutation inside an existing store transaction."""
        kind = TransactionKind(kind)
        if amount == 0:
            raise InvalidRequestError("Transaction amount must be non-zero")
        if (1 if amount > 0 else -1) not in _ALLOWED_SIGNS[kind]:
            raise InvalidRequestError(f"{kind.value} transactions cannot carry amount {amount}")
        if not reason or not reason.strip():
            raise InvalidRequestError("Transaction reason is required")

        account_data = txn.get("accounts", account_id)
        if account_data is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        balance_before = account_data["point_balance"]
        if amount < 0 and balance_before < -amount:
            raise InsufficientBalanceError(account_id, balance_before, -amount)
        balance_after = balance_before + amount

        account_data["point_balance"] = balance_after
        if kind == TransactionKind.EARN:
            account_data["total_points_earned"] += amount
            if account_data["role"] == AccountRole.CUSTOMER:
                account_data["level"] = max(
                    account_data["level"], customer_level_for_points(account_data["total_points_earned"])
                )
        txn.set("accounts", account_id, account_data)

        transaction = Transaction(
            transaction_id=uuid4(),
            account_id=account_id,
            amount=amount,
            kind=kind,
            reason=reason,
            related_entity_id=related_entity_id,
            balance_before=balance_before,
            balance_after=balance_after,
            created_at=now or datetime.now(timezone.utc),
        )
        txn.set("transactions", str(transaction.transaction_id), transaction.model_dump())

        logger.debug(
            "points_mutation_staged",
            account_id=account_id,
            kind=kind.value,
            amount=amount,
            balance_after=balance_after,
            related_entity_id=related_entity_id,
        )
        return transaction

    def get_account(self, account_id: str) -> Account:
        account_data = self.storage.get("accounts", account_id)
        if account_data is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**account_data)

    def transactions_for(self, account_id: str) -> list[Transaction]:
        """Account log in the order the mutations were applied."""
        return [
            Transaction(**t) for t in self.storage.select(
                "transactions", lambda t: t["account_id"] == account_id
            )
        ]

    def history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.get_account(account_id)
        entries = list(reversed(self.transactions_for(account_id)))
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=account.point_balance,
        )

    def verify_consistency(self, account_id: str) -> bool:
        """Latest ``balance_after`` must match the stored balance."""
        account = self.get_account(account_id)
        log = self.transactions_for(account_id)
        if not log:
            return account.point_balance == 0
        return log[-1].balance_after == account.point_balance

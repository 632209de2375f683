"""
Unit Tests for the Transaction Engine

Tests cover:
1. Earn and spend flows
2. Non-negative balances
3. Balance / log consistency
4. All-or-nothing store transactions
5. Mission awards and point conversion
6. Customer levels
"""

import pytest
from decimal import Decimal

from loyalty.config import Settings
from loyalty.errors import (
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidRequestError,
    StoreUnavailableError,
    UnauthorizedError,
)
from loyalty.models import AccountRole, TransactionKind
from loyalty.service import LoyaltyService
from loyalty.storage import InMemoryStorage


CUSTOMER_ID = "cust-ada"
BUSINESS_ID = "biz-cafe"


class FlakyStorage(InMemoryStorage):
    """Store whose commits can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_commits = False

    def _commit(self, txn):
        if self.fail_commits:
            raise StoreUnavailableError("store unavailable")
        super()._commit(txn)


def make_service(storage=None):
    service = LoyaltyService(storage=storage, settings=Settings())
    service.open_account(CUSTOMER_ID, AccountRole.CUSTOMER)
    service.open_account(BUSINESS_ID, AccountRole.BUSINESS)
    return service


class TestEarnAndSpend:
    """Tests for basic balance mutations."""

    def test_award_points_records_earn(self):
        service = make_service()

        txn = service.award_points(CUSTOMER_ID, 120, "Welcome bonus", "signup")

        assert txn.kind == TransactionKind.EARN
        assert txn.amount == 120
        assert txn.balance_before == 0
        assert txn.balance_after == 120
        account = service.get_account(CUSTOMER_ID)
        assert account.point_balance == 120
        assert account.total_points_earned == 120

    def test_spend_points_records_negative_amount(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 100, "Welcome bonus")

        txn = service.spend_points(CUSTOMER_ID, 30, "Marketplace purchase", "item-1")

        assert txn.kind == TransactionKind.SPEND
        assert txn.amount == -30
        assert txn.balance_after == 70
        account = service.get_account(CUSTOMER_ID)
        assert account.point_balance == 70
        # Spending never lowers the lifetime counter
        assert account.total_points_earned == 100

    def test_spend_exceeding_balance_fails_without_mutation(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 50, "Welcome bonus")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.spend_points(CUSTOMER_ID, 51, "Too expensive")

        assert exc_info.value.balance == 50
        assert exc_info.value.requested == 51
        assert service.get_balance(CUSTOMER_ID) == 50
        assert service.get_history(CUSTOMER_ID).total_count == 1

    def test_zero_and_negative_amounts_rejected(self):
        service = make_service()

        with pytest.raises(InvalidRequestError):
            service.award_points(CUSTOMER_ID, 0, "Nothing")
        with pytest.raises(InvalidRequestError):
            service.spend_points(CUSTOMER_ID, -5, "Sneaky credit")
        with pytest.raises(InvalidRequestError):
            service.engine.apply_transaction(CUSTOMER_ID, -5, TransactionKind.EARN, "Wrong sign")

    def test_unknown_account_fails(self):
        service = make_service()

        with pytest.raises(AccountNotFoundError):
            service.award_points("nobody", 10, "Ghost")

    def test_open_account_is_idempotent(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 10, "Bonus")

        account = service.open_account(CUSTOMER_ID, AccountRole.CUSTOMER)

        assert account.point_balance == 10


class TestLedgerConsistency:
    """The log must explain the balance exactly."""

    def test_latest_balance_after_matches_balance(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 100, "Bonus")
        service.spend_points(CUSTOMER_ID, 40, "Purchase")
        service.award_points(CUSTOMER_ID, 15, "Review")

        log = service.engine.transactions_for(CUSTOMER_ID)

        assert [t.balance_after for t in log] == [100, 60, 75]
        assert service.engine.verify_consistency(CUSTOMER_ID)
        assert sum(t.amount for t in log) == service.get_balance(CUSTOMER_ID)

    def test_history_is_newest_first_and_paginated(self):
        service = make_service()
        for amount in (10, 20, 30):
            service.award_points(CUSTOMER_ID, amount, f"Grant {amount}")

        history = service.get_history(CUSTOMER_ID, limit=2)

        assert history.total_count == 3
        assert [t.amount for t in history.entries] == [30, 20]
        assert history.current_balance == 60

    def test_transfer_moves_points_between_accounts(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 100, "Bonus")

        debit, credit = service.engine.apply_transfer(CUSTOMER_ID, BUSINESS_ID, 25, "Tip", "tip-1")

        assert debit.amount == -25
        assert credit.amount == 25
        assert service.get_balance(CUSTOMER_ID) == 75
        assert service.get_balance(BUSINESS_ID) == 25

    def test_failed_transfer_leaves_no_trace(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 10, "Bonus")

        with pytest.raises(InsufficientBalanceError):
            service.engine.apply_transfer(CUSTOMER_ID, BUSINESS_ID, 25, "Too much")

        assert service.get_balance(CUSTOMER_ID) == 10
        assert service.get_balance(BUSINESS_ID) == 0
        assert service.engine.transactions_for(BUSINESS_ID) == []


class TestStoreFailures:
    """Infrastructure errors must never leave half-applied state."""

    def test_commit_failure_writes_nothing(self):
        storage = FlakyStorage()
        service = make_service(storage)
        service.award_points(CUSTOMER_ID, 100, "Bonus")

        storage.fail_commits = True
        with pytest.raises(StoreUnavailableError):
            service.engine.apply_transfer(CUSTOMER_ID, BUSINESS_ID, 60, "Transfer")
        storage.fail_commits = False

        assert service.get_balance(CUSTOMER_ID) == 100
        assert service.get_balance(BUSINESS_ID) == 0
        assert service.get_history(CUSTOMER_ID).total_count == 1

    def test_retry_after_failure_succeeds(self):
        storage = FlakyStorage()
        service = make_service(storage)

        storage.fail_commits = True
        with pytest.raises(StoreUnavailableError):
            service.award_points(CUSTOMER_ID, 40, "Bonus")
        storage.fail_commits = False
        service.award_points(CUSTOMER_ID, 40, "Bonus")

        assert service.get_balance(CUSTOMER_ID) == 40
        assert service.engine.verify_consistency(CUSTOMER_ID)


class TestMissionAwards:
    """Mission rewards are paid at most once per account."""

    def test_second_award_is_ignored(self):
        service = make_service()

        first = service.award_mission_points(CUSTOMER_ID, "mission-42", 75)
        second = service.award_mission_points(CUSTOMER_ID, "mission-42", 75)

        assert first is not None
        assert first.related_entity_id == "mission-42"
        assert second is None
        assert service.get_balance(CUSTOMER_ID) == 75

    def test_same_mission_pays_different_accounts(self):
        service = make_service()
        service.open_account("cust-bob", AccountRole.CUSTOMER)

        service.award_mission_points(CUSTOMER_ID, "mission-42", 75)
        service.award_mission_points("cust-bob", "mission-42", 75)

        assert service.get_balance(CUSTOMER_ID) == 75
        assert service.get_balance("cust-bob") == 75

    def test_guard_records_claim(self):
        service = make_service()

        assert service.guard.try_claim(CUSTOMER_ID, "mission:m-1")
        assert not service.guard.try_claim(CUSTOMER_ID, "mission:m-1")
        claim = service.guard.get_claim(CUSTOMER_ID, "mission:m-1")
        assert claim.claim_id == f"{CUSTOMER_ID}_mission:m-1"


class TestPointConversion:
    """Businesses convert earned points into subscription credit."""

    def test_convert_points_to_credit(self):
        service = make_service()
        service.award_points(BUSINESS_ID, 500, "Redemption income")

        result = service.convert_points(BUSINESS_ID, 250)

        assert result.transaction.kind == TransactionKind.CONVERSION
        assert result.transaction.amount == -250
        assert result.credit_added == Decimal("2.50")
        account = service.get_account(BUSINESS_ID)
        assert account.point_balance == 250
        assert account.subscription_credit == Decimal("2.50")

    def test_convert_more_than_balance_fails(self):
        service = make_service()
        service.award_points(BUSINESS_ID, 100, "Redemption income")

        with pytest.raises(InsufficientBalanceError):
            service.convert_points(BUSINESS_ID, 101)

        assert service.get_account(BUSINESS_ID).subscription_credit == Decimal("0.00")

    def test_customers_cannot_convert(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 100, "Bonus")

        with pytest.raises(UnauthorizedError):
            service.convert_points(CUSTOMER_ID, 100)


class TestCustomerLevels:
    """Customer levels follow lifetime points earned."""

    def test_new_customer_is_explorer(self):
        service = make_service()

        info = service.get_customer_level(CUSTOMER_ID)

        assert info.level == 1
        assert info.level_name == "Explorer"
        assert info.points_to_next_level == 100

    def test_earning_raises_level(self):
        service = make_service()

        service.award_points(CUSTOMER_ID, 120, "Welcome bonus")
        assert service.get_account(CUSTOMER_ID).level == 2
        service.award_mission_points(CUSTOMER_ID, "mission-9", 400)

        info = service.get_customer_level(CUSTOMER_ID)
        assert info.level == 3
        assert info.level_name == "Insider"
        assert info.points_to_next_level == 2000 - 520

    def test_spending_never_lowers_level(self):
        service = make_service()
        service.award_points(CUSTOMER_ID, 2000, "Launch bonus")

        service.spend_points(CUSTOMER_ID, 1990, "Big purchase")

        info = service.get_customer_level(CUSTOMER_ID)
        assert info.level == 4
        assert info.points_to_next_level is None

    def test_business_accounts_have_no_customer_level(self):
        service = make_service()
        service.award_points(BUSINESS_ID, 5000, "Redemption income")

        assert service.get_account(BUSINESS_ID).level == 1
        with pytest.raises(AccountNotFoundError):
            service.get_customer_level(BUSINESS_ID)


class TestNestedStoreTransactions:
    """A nested call that fails leaves nothing behind in the outer one."""

    def test_failed_nested_call_is_rolled_back(self):
        service = make_service()
        storage = service.storage

        def _outer(txn):
            service.engine.apply(txn, CUSTOMER_ID, 50, TransactionKind.EARN, "Kept")
            try:
                storage.run_transaction(
                    lambda inner: service.engine.transfer(inner, BUSINESS_ID, CUSTOMER_ID, 10, "Dropped")
                )
            except InsufficientBalanceError:
                pass
            try:
                storage.run_transaction(lambda inner: _award_then_fail(inner))
            except InvalidRequestError:
                pass

        def _award_then_fail(txn):
            service.engine.apply(txn, CUSTOMER_ID, 30, TransactionKind.EARN, "Dropped")
            raise InvalidRequestError("rejected after staging")

        storage.run_transaction(_outer)

        assert service.get_balance(CUSTOMER_ID) == 50
        assert [t.reason for t in service.engine.transactions_for(CUSTOMER_ID)] == ["Kept"]
        assert service.engine.verify_consistency(CUSTOMER_ID)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

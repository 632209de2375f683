class LoyaltyError(Exception):
    pass


# Validation: rejected before anything is written.

class InvalidRequestError(LoyaltyError):
    pass


class MissingReasonError(InvalidRequestError):
    pass


# Lookups

class NotFoundError(LoyaltyError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class RewardNotFoundError(NotFoundError):
    pass


class RedemptionNotFoundError(NotFoundError):
    pass


# Preconditions: typed failures, never retried by the engine.

class PreconditionError(LoyaltyError):
    pass


class InsufficientBalanceError(PreconditionError):
    def __init__(self, account_id: str, balance: int, requested: int):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Account {account_id} has {balance} points, {requested} required"
        )


class RewardInactiveError(PreconditionError):
    pass


class RewardExpiredError(PreconditionError):
    pass


class RewardSoldOutError(PreconditionError):
    pass


class EligibilityNotMetError(PreconditionError):
    pass


class RedemptionLimitReachedError(EligibilityNotMetError):
    pass


class NotEligibleError(PreconditionError):
    pass


class NoPendingRequestError(PreconditionError):
    pass


class InvalidStateTransitionError(PreconditionError):
    pass


class UnauthorizedError(PreconditionError):
    pass


# Infrastructure: transient, safe to retry.

class StoreUnavailableError(LoyaltyError):
    pass

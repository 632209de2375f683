from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AccountRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    BUSINESS = "BUSINESS"
    CREATOR = "CREATOR"


class TransactionKind(str, Enum):
    EARN = "EARN"
    SPEND = "SPEND"
    CONVERSION = "CONVERSION"
    REFUND = "REFUND"


class RedemptionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    USED = "USED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class RedemptionFrequency(str, Enum):
    UNLIMITED = "UNLIMITED"
    ONCE = "ONCE"
    ONCE_PER_DAY = "ONCE_PER_DAY"
    ONCE_PER_WEEK = "ONCE_PER_WEEK"
    ONCE_PER_MONTH = "ONCE_PER_MONTH"


class ExpiredRedemptionPolicy(str, Enum):
    FORFEIT = "FORFEIT"
    REFUND = "REFUND"


class AdminAction(str, Enum):
    APPROVE_BUSINESS_UPGRADE = "APPROVE_BUSINESS_UPGRADE"
    REJECT_BUSINESS_UPGRADE = "REJECT_BUSINESS_UPGRADE"


class StreakRecord(BaseModel):
    login_streak: int = 0
    longest_login_streak: int = 0
    last_login_at: Optional[datetime] = None
    last_streak_reward_claimed: Optional[date] = None
    total_streak_points_earned: int = 0


class BusinessProgress(BaseModel):
    business_level: int = Field(default=1, ge=1, le=6)
    business_sub_level: int = Field(default=1, ge=1, le=9)
    business_xp: int = Field(default=0, ge=0)
    upgrade_requested: bool = False
    upgrade_requested_at: Optional[datetime] = None
    upgrade_approved_at: Optional[datetime] = None
    last_upgrade_approved_by: Optional[str] = None
    last_upgrade_rejected_by: Optional[str] = None
    last_upgrade_rejected_at: Optional[datetime] = None
    last_upgrade_rejection_reason: Optional[str] = None


class Account(BaseModel):
    account_id: str
    role: AccountRole
    point_balance: int = Field(default=0, ge=0)
    total_points_earned: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    subscription_credit: Decimal = Decimal("0.00")
    streak: StreakRecord = Field(default_factory=StreakRecord)
    business: Optional[BusinessProgress] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    transaction_id: UUID
    account_id: str
    amount: int
    kind: TransactionKind
    reason: str
    related_entity_id: Optional[str] = None
    balance_before: int
    balance_after: int
    created_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Reward(BaseModel):
    reward_id: UUID
    business_id: str
    title: str
    points_cost: int = Field(..., gt=0)
    total_available: int = Field(default=0, ge=0)
    claimed: int = Field(default=0, ge=0)
    unlimited: bool = False
    active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    available_days: Optional[list[int]] = None
    available_from: Optional[time] = None
    available_until: Optional[time] = None
    level_required: int = Field(default=1, ge=1)
    redemption_frequency: RedemptionFrequency = RedemptionFrequency.UNLIMITED
    requires_approval: bool = False
    expiry_days: Optional[int] = Field(default=None, gt=0)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return self.total_available - self.claimed


class Redemption(BaseModel):
    redemption_id: UUID
    user_id: str
    reward_id: UUID
    business_id: str
    points_spent: int
    coupon_code: str
    status: RedemptionStatus
    requires_approval: bool = False
    redeemed_at: datetime
    expires_at: datetime
    approved_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    # Points the business could not return when an expiry refund was due.
    unrefunded_points: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class ClaimRecord(BaseModel):
    claim_id: str
    account_id: str
    claim_key: str
    related_entity_id: Optional[str] = None
    created_at: datetime


class AdminAuditEntry(BaseModel):
    entry_id: UUID
    action: AdminAction
    actor_id: str
    target_id: str
    reason: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime


class StreakReward(BaseModel):
    new_streak_length: int
    base_points: int
    bonus_points: int
    milestone_bonus: int
    total_points: int


class StreakClaimResult(BaseModel):
    account_id: str
    already_claimed_today: bool
    new_streak_length: int
    total_points: int = 0
    milestone_reached: bool = False
    breakdown: Optional[StreakReward] = None
    transaction: Optional[Transaction] = None


class ConversionResult(BaseModel):
    transaction: Transaction
    credit_added: Decimal
    subscription_credit: Decimal


class CustomerLevelInfo(BaseModel):
    account_id: str
    level: int
    level_name: str
    total_points_earned: int
    points_to_next_level: Optional[int] = None


class PendingUpgrade(BaseModel):
    business_id: str
    business_level: int
    business_sub_level: int
    business_xp: int
    requested_at: datetime


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: int


# Request bodies

class OpenAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    role: AccountRole


class PointsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
    related_entity_id: Optional[str] = None


class MissionPointsRequest(BaseModel):
    mission_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)


class ConvertPointsRequest(BaseModel):
    points: int = Field(..., gt=0)


class CreateRewardRequest(BaseModel):
    business_id: str
    title: str
    points_cost: int = Field(..., gt=0)
    total_available: int = Field(default=0, ge=0)
    unlimited: bool = False
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    available_days: Optional[list[int]] = None
    available_from: Optional[time] = None
    available_until: Optional[time] = None
    level_required: int = Field(default=1, ge=1)
    redemption_frequency: RedemptionFrequency = RedemptionFrequency.UNLIMITED
    requires_approval: bool = False
    expiry_days: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "business_id": "biz-cafe-01",
            "title": "Free espresso",
            "points_cost": 60,
            "total_available": 25,
            "available_days": [0, 1, 2, 3, 4],
            "available_from": "08:00:00",
            "available_until": "11:00:00",
        }
    })

    @field_validator("available_days")
    @classmethod
    def _check_days(cls, days: Optional[list[int]]) -> Optional[list[int]]:
        if days is not None and any(d < 0 or d > 6 for d in days):
            raise ValueError("available_days must be weekday numbers 0 (Monday) to 6 (Sunday)")
        return days

    @model_validator(mode="after")
    def _check_stock(self) -> "CreateRewardRequest":
        if not self.unlimited and self.total_available < 1:
            raise ValueError("total_available must be positive unless the reward is unlimited")
        return self


class RedeemRewardRequest(BaseModel):
    user_id: str
    dedupe: bool = Field(default=False, description="Collapse repeated clicks within the click window")


class BusinessActorRequest(BaseModel):
    business_user_id: str


class XpRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: Optional[str] = None


class ApproveUpgradeRequest(BaseModel):
    admin_id: str


class RejectUpgradeRequest(BaseModel):
    admin_id: str
    reason: str = ""

from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    LoyaltyError,
    NotFoundError,
    PreconditionError,
    StoreUnavailableError,
    UnauthorizedError,
)
from .logging import configure_logging
from .models import (
    Account,
    AdminAuditEntry,
    ApproveUpgradeRequest,
    BusinessActorRequest,
    BusinessProgress,
    ConversionResult,
    ConvertPointsRequest,
    CreateRewardRequest,
    CustomerLevelInfo,
    LedgerHistoryResponse,
    MissionPointsRequest,
    OpenAccountRequest,
    PendingUpgrade,
    PointsRequest,
    Redemption,
    RedemptionStatus,
    RedeemRewardRequest,
    RejectUpgradeRequest,
    Reward,
    StreakClaimResult,
    Transaction,
    XpRequest,
)
from .service import LoyaltyService

settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(
    title="Loyalty Points API",
    description="Points ledger, reward redemptions, daily streaks and business levels",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

loyalty_service = LoyaltyService(settings=settings)


def _http_error(exc: LoyaltyError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, UnauthorizedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, PreconditionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, StoreUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"error": type(exc).__name__, "message": str(exc)})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "loyalty-points"}


@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(request: OpenAccountRequest) -> Account:
    return loyalty_service.open_account(request.account_id, request.role)


@app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
def get_account(account_id: str) -> Account:
    try:
        return loyalty_service.get_account(account_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_ledger(account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    try:
        return loyalty_service.get_history(account_id, limit, offset)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/level", response_model=CustomerLevelInfo, tags=["Accounts"])
def get_customer_level(account_id: str) -> CustomerLevelInfo:
    try:
        return loyalty_service.get_customer_level(account_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/award", response_model=Transaction, tags=["Points"])
def award_points(account_id: str, request: PointsRequest) -> Transaction:
    try:
        return loyalty_service.award_points(account_id, request.amount, request.reason, request.related_entity_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/spend", response_model=Transaction, tags=["Points"])
def spend_points(account_id: str, request: PointsRequest) -> Transaction:
    try:
        return loyalty_service.spend_points(account_id, request.amount, request.reason, request.related_entity_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/missions", response_model=Optional[Transaction], tags=["Points"])
def award_mission_points(account_id: str, request: MissionPointsRequest) -> Optional[Transaction]:
    try:
        return loyalty_service.award_mission_points(account_id, request.mission_id, request.amount)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/convert", response_model=ConversionResult, tags=["Points"])
def convert_points(account_id: str, request: ConvertPointsRequest) -> ConversionResult:
    try:
        return loyalty_service.convert_points(account_id, request.points)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/streak", response_model=StreakClaimResult, tags=["Streaks"])
def claim_daily_streak(account_id: str) -> StreakClaimResult:
    try:
        return loyalty_service.claim_daily_streak(account_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/rewards", response_model=Reward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def publish_reward(request: CreateRewardRequest) -> Reward:
    try:
        return loyalty_service.publish_reward(request)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
def get_reward(reward_id: UUID) -> Reward:
    try:
        return loyalty_service.get_reward(reward_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/rewards/{reward_id}/deactivate", response_model=Reward, tags=["Rewards"])
def deactivate_reward(reward_id: UUID, request: BusinessActorRequest) -> Reward:
    try:
        return loyalty_service.deactivate_reward(reward_id, request.business_user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post(
    "/rewards/{reward_id}/redeem",
    response_model=Redemption,
    status_code=status.HTTP_201_CREATED,
    tags=["Redemptions"],
)
def redeem_reward(reward_id: UUID, request: RedeemRewardRequest) -> Redemption:
    try:
        return loyalty_service.redeem_reward(request.user_id, reward_id, dedupe=request.dedupe)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/redemptions", response_model=list[Redemption], tags=["Redemptions"])
def list_redemptions(
    user_id: Optional[str] = None,
    business_id: Optional[str] = None,
    redemption_status: Optional[RedemptionStatus] = None,
) -> list[Redemption]:
    return loyalty_service.list_redemptions(user_id, business_id, redemption_status)


@app.get("/redemptions/{redemption_id}", response_model=Redemption, tags=["Redemptions"])
def get_redemption(redemption_id: UUID) -> Redemption:
    try:
        return loyalty_service.get_redemption(redemption_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/redemptions/{redemption_id}/approve", response_model=Redemption, tags=["Redemptions"])
def approve_redemption(redemption_id: UUID, request: BusinessActorRequest) -> Redemption:
    try:
        return loyalty_service.approve_redemption(redemption_id, request.business_user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/redemptions/{redemption_id}/use", response_model=Redemption, tags=["Redemptions"])
def mark_redemption_used(redemption_id: UUID, request: BusinessActorRequest) -> Redemption:
    try:
        return loyalty_service.mark_redemption_used(redemption_id, request.business_user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/coupons/{coupon_code}/validate", response_model=Redemption, tags=["Redemptions"])
def validate_coupon(coupon_code: str, request: BusinessActorRequest) -> Redemption:
    try:
        return loyalty_service.validate_coupon(coupon_code, request.business_user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/redemptions/{redemption_id}/cancel", response_model=Redemption, tags=["Redemptions"])
def cancel_redemption(redemption_id: UUID) -> Redemption:
    try:
        return loyalty_service.cancel_redemption(redemption_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/jobs/expire-redemptions", response_model=list[Redemption], tags=["Jobs"])
def expire_stale_redemptions() -> list[Redemption]:
    try:
        return loyalty_service.expire_stale_redemptions()
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/businesses/{business_id}/progress", response_model=BusinessProgress, tags=["Business Levels"])
def get_business_progress(business_id: str) -> BusinessProgress:
    try:
        return loyalty_service.get_business_progress(business_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/businesses/{business_id}/xp", response_model=BusinessProgress, tags=["Business Levels"])
def award_business_xp(business_id: str, request: XpRequest) -> BusinessProgress:
    try:
        return loyalty_service.award_business_xp(business_id, request.amount, request.reason)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/businesses/{business_id}/upgrade-request", response_model=BusinessProgress, tags=["Business Levels"])
def request_business_upgrade(business_id: str) -> BusinessProgress:
    try:
        return loyalty_service.request_business_upgrade(business_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/admin/upgrades/{business_id}/approve", response_model=BusinessProgress, tags=["Admin"])
def approve_business_upgrade(business_id: str, request: ApproveUpgradeRequest) -> BusinessProgress:
    try:
        return loyalty_service.approve_business_upgrade(business_id, request.admin_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/admin/upgrades/{business_id}/reject", response_model=BusinessProgress, tags=["Admin"])
def reject_business_upgrade(business_id: str, request: RejectUpgradeRequest) -> BusinessProgress:
    try:
        return loyalty_service.reject_business_upgrade(business_id, request.admin_id, request.reason)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/admin/upgrades", response_model=list[PendingUpgrade], tags=["Admin"])
def list_pending_upgrades() -> list[PendingUpgrade]:
    return loyalty_service.list_pending_upgrades()


@app.get("/admin/audit-log", response_model=list[AdminAuditEntry], tags=["Admin"])
def list_admin_actions(target_id: Optional[str] = None) -> list[AdminAuditEntry]:
    return loyalty_service.list_admin_actions(target_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

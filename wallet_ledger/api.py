from functools import lru_cache
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from earnings_rules.events import parse_ad_event

from .accounts import InMemoryAccountDirectory
from .errors import (
    AccountInactiveError,
    AccountNotFoundError,
    AlreadySpunTodayError,
    ConfigurationError,
    DailyLimitReachedError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LedgerServiceError,
    StoreUnavailableError,
    WithdrawalNotAllowedError,
)
from .log import configure_logging, get_logger
from .models import (
    AdminCommand,
    AdminCommandResult,
    LedgerHistoryResponse,
    LedgerResult,
    LevelUpgradeRequest,
    ReconciliationReport,
    ReferralCheckResult,
    ReferralProgress,
    SpinRecord,
    SpinResult,
    SpinStats,
    TaskRewardRequest,
    TransactionType,
    Wallet,
    WithdrawalRequest,
)
from .rewards import RewardsService

logger = get_logger(__name__)

configure_logging()

app = FastAPI(
    title="Rewards Wallet Ledger API",
    description="Earnings rules and an append-only wallet ledger for task, ad, spin and referral rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_rewards_service() -> RewardsService:
    return RewardsService.from_settings(accounts=InMemoryAccountDirectory.with_demo_accounts())


_STATUS_BY_ERROR = (
    (InvalidAmountError, status.HTTP_400_BAD_REQUEST),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (AlreadySpunTodayError, status.HTTP_409_CONFLICT),
    (DailyLimitReachedError, status.HTTP_409_CONFLICT),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (AccountInactiveError, status.HTTP_403_FORBIDDEN),
    (WithdrawalNotAllowedError, status.HTTP_403_FORBIDDEN),
    (AccountNotFoundError, status.HTTP_404_NOT_FOUND),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _http_error(e: LedgerServiceError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    headers = {"Retry-After": "1"} if isinstance(e, StoreUnavailableError) else None
    return HTTPException(status_code=status_code, detail=str(e), headers=headers)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "rewards-wallet-ledger"}


@app.post("/ad-events", response_model=LedgerResult, tags=["Earnings"])
def receive_ad_event(
    payload: dict = Body(...),
    service: RewardsService = Depends(get_rewards_service),
) -> LedgerResult:
    try:
        event = parse_ad_event(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors())
    try:
        return service.apply_ad_event(event)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/tasks/{task_id}/reward", response_model=LedgerResult, tags=["Earnings"])
def credit_task_reward(
    user_id: str,
    task_id: str,
    request: TaskRewardRequest,
    service: RewardsService = Depends(get_rewards_service),
) -> LedgerResult:
    try:
        return service.credit_task_reward(user_id, task_id, request.amount)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/spin", tags=["Spin"])
def spin_status(user_id: str, service: RewardsService = Depends(get_rewards_service)):
    try:
        return {"user_id": user_id, "can_spin": service.can_spin(user_id)}
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/spin", response_model=SpinResult, tags=["Spin"])
def draw_daily_spin(user_id: str, service: RewardsService = Depends(get_rewards_service)) -> SpinResult:
    try:
        return service.draw_daily_spin(user_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/spin/history", response_model=list[SpinRecord], tags=["Spin"])
def spin_history(user_id: str, limit: int = 30, service: RewardsService = Depends(get_rewards_service)):
    return service.spin_history(user_id, limit)


@app.get("/users/{user_id}/spin/stats", response_model=SpinStats, tags=["Spin"])
def spin_stats(user_id: str, service: RewardsService = Depends(get_rewards_service)) -> SpinStats:
    return service.spin_stats(user_id)


@app.post("/users/{user_id}/referral-bonuses/check", response_model=ReferralCheckResult, tags=["Referrals"])
def check_referral_bonuses(
    user_id: str, service: RewardsService = Depends(get_rewards_service),
) -> ReferralCheckResult:
    try:
        return service.check_referral_bonuses(user_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/referrals/progress", response_model=ReferralProgress, tags=["Referrals"])
def referral_progress(user_id: str, service: RewardsService = Depends(get_rewards_service)) -> ReferralProgress:
    try:
        return service.referral_progress(user_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/level-upgrade", response_model=LedgerResult, tags=["Wallet"])
def purchase_level_upgrade(
    user_id: str,
    request: LevelUpgradeRequest,
    service: RewardsService = Depends(get_rewards_service),
) -> LedgerResult:
    try:
        return service.purchase_level_upgrade(user_id, request.target_level, request.purchase_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/wallet", response_model=Wallet, tags=["Wallet"])
def get_wallet(user_id: str, service: RewardsService = Depends(get_rewards_service)) -> Wallet:
    try:
        return service.get_wallet(user_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Wallet"])
def get_transactions(
    user_id: str,
    type: Optional[TransactionType] = None,
    limit: int = 50,
    offset: int = 0,
    service: RewardsService = Depends(get_rewards_service),
) -> LedgerHistoryResponse:
    try:
        return service.get_ledger_history(user_id, type, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/withdrawable", tags=["Wallet"])
def get_withdrawable(user_id: str, service: RewardsService = Depends(get_rewards_service)):
    try:
        return {"user_id": user_id, "withdrawable_balance": service.withdrawable_balance(user_id)}
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/withdrawals", response_model=LedgerResult, tags=["Wallet"])
def record_withdrawal(
    user_id: str,
    request: WithdrawalRequest,
    service: RewardsService = Depends(get_rewards_service),
) -> LedgerResult:
    try:
        return service.record_withdrawal(user_id, request.amount, request.reference)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/reconciliation", response_model=ReconciliationReport, tags=["Wallet"])
def reconcile(user_id: str, service: RewardsService = Depends(get_rewards_service)) -> ReconciliationReport:
    try:
        return service.reconcile(user_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/commands", response_model=AdminCommandResult, tags=["Admin"])
def run_admin_command(
    command: AdminCommand, service: RewardsService = Depends(get_rewards_service),
) -> AdminCommandResult:
    try:
        return service.admin_execute(command)
    except LedgerServiceError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

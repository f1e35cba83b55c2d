class LedgerServiceError(Exception):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, user_id: str, available, requested):
        self.user_id = user_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for {user_id}: available {available}, debit {requested}"
        )


class AlreadySpunTodayError(LedgerServiceError):
    pass


class AccountInactiveError(LedgerServiceError):
    pass


class DailyLimitReachedError(LedgerServiceError):
    pass


class AccountNotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class WithdrawalNotAllowedError(LedgerServiceError):
    pass


class ConfigurationError(LedgerServiceError):
    pass


class StoreUnavailableError(LedgerServiceError):
    """Nothing was committed; the caller may retry with backoff."""


class IdempotencyConflictError(LedgerServiceError):
    """Idempotency key already used for a different type or amount."""

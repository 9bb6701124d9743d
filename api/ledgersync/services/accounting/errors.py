"""Error taxonomy of the accounting sync engine.

Configuration errors abort a whole run. Provider errors are recorded on the
affected sync record and picked up again by the next reconciliation pass.
"""

# ─── Error codes persisted on accounting_sync_records.error_code ───────────────

EXPORT_FAILED = "EXPORT_FAILED"
ATTACHMENT_DOWNLOAD_FAILED = "ATTACHMENT_DOWNLOAD_FAILED"
ATTACHMENT_UNSUPPORTED_TYPE = "ATTACHMENT_UNSUPPORTED_TYPE"
ATTACHMENT_TOO_LARGE = "ATTACHMENT_TOO_LARGE"
ATTACHMENT_UPLOAD_FAILED = "ATTACHMENT_UPLOAD_FAILED"
ATTACHMENT_NOT_FOUND = "ATTACHMENT_NOT_FOUND"

# Never worth an in-process retry
NON_RETRYABLE_CODES = frozenset({ATTACHMENT_UNSUPPORTED_TYPE, ATTACHMENT_TOO_LARGE})

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests", "throttl")


class AccountingError(Exception):
    """Base class for sync engine errors."""


class AccountingConfigError(AccountingError):
    """Missing or unusable connection, tenant, target account or tokens."""


class UnknownTargetAccountError(AccountingConfigError):
    """The chosen target account is not a bank account of the connected tenant."""


class ProviderError(AccountingError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """The provider rejected the call because its rate budget is exhausted."""


def is_rate_limit_error(error: BaseException | str | None) -> bool:
    """Classify an error as rate limiting.

    Structured ``RateLimitedError`` wins; otherwise fall back to matching the
    error text, since providers report throttling in different shapes.
    """
    if error is None:
        return False
    if isinstance(error, RateLimitedError):
        return True
    text = str(error).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)

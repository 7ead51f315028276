"""Failure taxonomy shared by the ledger, the scheduler and the HTTP layer.

Each error carries a short machine-readable ``code`` so callers can return a
structured failure reason without parsing messages.
"""


class LedgerError(Exception):
    code = "ledger_error"


class ValidationError(LedgerError, ValueError):
    """Malformed amount, date, interval or payload. Nothing was written."""

    code = "validation_error"


class NotFoundError(LedgerError, ValueError):
    """Account, transaction, budget or user missing for this user."""

    code = "not_found"


class ConcurrencyConflict(LedgerError):
    """Another run already advanced the row. Callers treat this as skipped."""

    code = "concurrency_conflict"


class DownstreamUnavailable(LedgerError, RuntimeError):
    """Store or notification collaborator unreachable; retry next cycle."""

    code = "downstream_unavailable"


class RateLimited(LedgerError):
    """Throttle cap reached; the work is deferred, not dropped."""

    code = "rate_limited"

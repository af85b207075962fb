"""Service error hierarchy for the credit-gated job pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable provider errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)

Each error carries the HTTP status the API layer maps it to.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    status_code: int = 500
    code: str = "internal_error"


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# Request-level errors (raised before any job exists)
class JobValidationError(PermanentError):
    """Malformed job input (missing prompt, bad image count, unknown model)."""

    status_code = 400
    code = "validation_error"


class AccountNotFoundError(PermanentError):
    """Account id supplied by the auth layer does not exist."""

    status_code = 401
    code = "unauthenticated"


class JobNotFoundError(PermanentError):
    status_code = 404
    code = "job_not_found"


class InsufficientCreditsError(PermanentError):
    """Ledger reservation failed; no job was created."""

    status_code = 403
    code = "insufficient_credits"

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class JobAlreadyInProgressError(PermanentError):
    """A training job is already pending or running for the account."""

    status_code = 403
    code = "job_in_progress"


# Ledger bookkeeping
class LedgerError(ServiceError):
    """Base exception for ledger errors."""

    pass


class ReservationAlreadySettledError(LedgerError):
    """Reservation was already committed or refunded."""

    pass


class ResultPersistenceError(LedgerError):
    """Provider succeeded but results could not be persisted.

    The job stays running, flagged for manual reconciliation.
    """

    code = "reconciliation_required"


# Provider errors
class ProviderError(ServiceError):
    """Base exception for external job provider errors."""

    code = "provider_failure"


class ProviderTransientError(ProviderError, TransientError):
    """Network timeout, rate limit or provider unavailability."""

    pass


class ProviderContentPolicyError(ProviderError, PermanentError):
    """Provider rejected the input on content policy grounds."""

    pass


class ProviderPermanentError(ProviderError, PermanentError):
    """Authentication failure, invalid input or unexpected provider output."""

    pass

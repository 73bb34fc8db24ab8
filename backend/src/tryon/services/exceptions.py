"""Service error hierarchy for provider, storage and ledger operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


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


# Provider errors
class ProviderError(ServiceError):
    """Base exception for third-party AI provider failures.

    The message is the provider's error text and is stored on the job.
    """

    pass


class ProviderTimeoutError(ProviderError, TransientError):
    """Provider call exceeded the outbound timeout or the network failed."""

    pass


class ProviderRateLimitError(ProviderError, TransientError):
    """Provider rejected the call with 429 or 503."""

    pass


class ProviderAuthError(ProviderError, PermanentError):
    """Provider rejected the API key (401, 403) or the key is not configured."""

    pass


class ProviderResponseError(ProviderError, PermanentError):
    """Provider answered non-2xx or without a usable task id."""

    pass


# Storage errors
class StorageError(ServiceError):
    """Downloading a result or uploading it to durable storage failed."""

    pass


# Ledger conditions
class LedgerError(ServiceError):
    """Base exception for credit ledger errors."""

    pass


class CreditsNotInitializedError(LedgerError):
    """User has never been provisioned with a credit balance."""

    pass


class CreditKindNotAllowedError(LedgerError):
    """Direct credit addition with a kind reserved for the payment webhook."""

    pass


class InvalidCreditAmountError(LedgerError):
    """Credit amount is missing, zero or negative."""

    pass


# Job lifecycle
class UnattributableEventError(ServiceError):
    """Provider callback without a recoverable task id."""

    pass


class JobNotFoundError(ServiceError):
    """No job matches the referenced job id or task id."""

    pass


class JobInputError(ServiceError):
    """Job inputs are incomplete or the job cannot be submitted in its current state."""

    pass


# Payments
class PaymentError(ServiceError):
    """Payment gateway rejected or failed an order."""

    pass


class InvalidSignatureError(PaymentError):
    """Payment notification signature does not match."""

    pass


class OrderNotFoundError(PaymentError):
    """No ledger entry carries the notified order id."""

    pass

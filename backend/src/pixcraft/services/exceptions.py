"""Service error hierarchy for generation, storage and billing operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (rate limits, timeouts, store hiccups)
- PermanentError: Non-retryable errors (provider rejection, bad input)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry."""

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry."""

    pass


# Request validation
class InvalidGenerationRequest(PermanentError, ValueError):
    """Malformed or missing prompt, or out-of-range parameters.

    Raised before a generation record exists.
    """

    pass


# Provider errors
class ProviderOverloaded(TransientError):
    """Provider kept rate limiting after the retry budget was spent."""

    pass


class ProviderUnavailable(PermanentError):
    """Provider rejected the request or did not answer in time."""

    pass


class NoOutputProduced(PermanentError):
    """Provider returned no usable images."""

    pass


# Storage errors
class StorageError(TransientError):
    """Object store write or delete failed."""

    pass


class ImageProcessingError(PermanentError):
    """Fetched bytes could not be decoded or re-encoded as an image."""

    pass


class StorageDegraded(TransientError):
    """Some, but not all, outputs of a generation could not be materialized."""

    pass


# Billing errors
class InsufficientFunds(PermanentError):
    """Account balance does not cover the requested debit."""

    def __init__(self, account_id, required: int, available: int | None):
        self.account_id = account_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available or 0}"
        )


class AccountNotFound(PermanentError):
    """Referenced account does not exist."""

    pass


# Lifecycle errors surfaced to HTTP handlers
class GenerationNotFound(PermanentError):
    """Generation does not exist or belongs to another account."""

    pass


class InvalidGenerationState(PermanentError):
    """Requested action is not allowed in the generation's current status."""

    pass

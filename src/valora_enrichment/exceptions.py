"""Unified exception hierarchy for the Valora enrichment runtime.

All Valora-specific exceptions inherit from ValoraError, enabling:
- Consistent error handling across the run manager, stores and resolvers
- Structured error payloads with machine-readable error codes
- A single place that turns arbitrary failures into human-readable reasons

Usage:
    from valora_enrichment.exceptions import (
        ValoraError,
        StorageUnavailableError,
        failure_reason,
    )

    try:
        await repository.insert_missing_fx_rates(key, points)
    except StorageUnavailableError as e:
        outcome = ItemFailure(identifier, failure_reason(e))

Per-item fetch failures are data, not control flow: they are recorded on the
run and never escape the run boundary.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Type

from .constants import DEFAULT_FAILURE_REASON

logger = logging.getLogger(__name__)


class ValoraError(Exception):
    """Base exception for all Valora errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "VALORA_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Lookup Errors
# =============================================================================

class ValoraValidationError(ValoraError):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class UnsupportedCurrencyError(ValoraValidationError):
    """Currency code is malformed or not in the allow-list."""

    error_code = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: str, field: str = "currency") -> None:
        super().__init__(f"Unsupported base currency: {currency}", field=field)
        self.details["currency"] = currency


class ValoraNotFoundError(ValoraError):
    """Requested resource not found."""

    error_code = "NOT_FOUND"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


# =============================================================================
# Storage Errors
# =============================================================================

class StorageUnavailableError(ValoraError):
    """A store read or write could not be completed."""

    error_code = "STORAGE_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class ReconciliationWriteError(StorageUnavailableError):
    """Resolving a pending reconciliation could not be persisted."""

    error_code = "RECONCILIATION_WRITE_FAILED"


# =============================================================================
# Run Errors
# =============================================================================

class RunStateError(ValoraError):
    """A run was mutated outside of its running state."""

    error_code = "RUN_STATE_ERROR"


class ProgressOverflowError(RunStateError):
    """Category progress would exceed its total."""

    error_code = "PROGRESS_OVERFLOW"


# =============================================================================
# Provider Configuration Errors
# =============================================================================

class ProviderConfigurationError(ValoraError):
    """The enrichment provider cannot be resolved from configuration.

    error_code is one of ``provider_not_configured``, ``provider_not_supported``
    or ``provider_config_invalid``.
    """

    error_code = "provider_not_configured"

    def __init__(
        self,
        message: str,
        error_code: str,
        provider_id: Optional[str] = None,
    ) -> None:
        details = {"provider_id": provider_id} if provider_id else None
        super().__init__(message, error_code=error_code, details=details)


EXCEPTION_REGISTRY: dict[str, Type[ValoraError]] = {
    "VALORA_ERROR": ValoraError,
    "VALIDATION_ERROR": ValoraValidationError,
    "UNSUPPORTED_CURRENCY": UnsupportedCurrencyError,
    "NOT_FOUND": ValoraNotFoundError,
    "STORAGE_UNAVAILABLE": StorageUnavailableError,
    "RECONCILIATION_WRITE_FAILED": ReconciliationWriteError,
    "RUN_STATE_ERROR": RunStateError,
    "PROGRESS_OVERFLOW": ProgressOverflowError,
}


def get_exception_class(error_code: str) -> Type[ValoraError]:
    """Get the exception class for an error code (ValoraError if unknown)."""
    return EXCEPTION_REGISTRY.get(error_code, ValoraError)


def failure_reason(error: BaseException) -> str:
    """Render an exception as the human-readable reason stored on a failed item.

    Retry wrappers are unwrapped so the reason names the provider's own
    complaint rather than the retry bookkeeping.
    """
    original = getattr(error, "original_exception", None)
    if isinstance(original, BaseException):
        error = original

    message = error.message if isinstance(error, ValoraError) else str(error)
    cleaned = " ".join(message.split())
    return cleaned or DEFAULT_FAILURE_REASON

"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from decimal import Decimal
from typing import TYPE_CHECKING

from metering.models.api import ClientErrorReason, PolicyReason, PolicySuggestion

if TYPE_CHECKING:
    from metering.models.domain import Decision


POLICY_MESSAGES: dict[PolicyReason, str] = {
    PolicyReason.NO_SESSION: "You must be signed in to perform this action.",
    PolicyReason.NO_MEMBERSHIP: "You do not have access to this workspace.",
    PolicyReason.NO_PERMISSION: "You do not have permission to perform this action.",
    PolicyReason.NO_SUBSCRIPTION: "This workspace does not have an active subscription.",
    PolicyReason.FEATURE_DISABLED: "This feature is not enabled for the current plan.",
    PolicyReason.LIMIT_EXCEEDED: "You have exceeded the current plan limit.",
    PolicyReason.INSUFFICIENT_CREDITS: "You have insufficient credits to perform this action.",
}


class MeteringError(Exception):
    """Base exception for all metering errors."""

    pass


# ============================================================================
# Client Errors (never retried)
# ============================================================================


class ClientError(MeteringError):
    """Raised for malformed requests. Maps to HTTP 400."""

    reason = ClientErrorReason.BAD_REQUEST

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class BadRequestError(ClientError):
    """Raised when required identifiers are missing."""

    reason = ClientErrorReason.BAD_REQUEST


class InvalidQuantityError(ClientError):
    """Raised when a usage quantity is not a finite positive number."""

    reason = ClientErrorReason.INVALID_QUANTITY

    def __init__(self, quantity: object) -> None:
        self.quantity = quantity
        super().__init__(f"Quantity must be a finite number greater than zero, got: {quantity}")


class MissingIdempotencyKeyError(ClientError):
    """Raised when a mutating call carries no idempotency key."""

    reason = ClientErrorReason.MISSING_IDEMPOTENCY_KEY

    def __init__(self) -> None:
        super().__init__("An idempotency key is required")


class IdempotencyConflictError(MeteringError):
    """Raised when idempotency key reused with different data."""

    reason = ClientErrorReason.IDEMPOTENCY_CONFLICT

    def __init__(self, idempotency_key: str, existing_id: object) -> None:
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id
        super().__init__(
            f"Idempotency conflict: key {idempotency_key} already used by {existing_id}"
        )


# ============================================================================
# Authorization / Policy Errors
# ============================================================================


class PolicyDeniedError(MeteringError):
    """Raised when an access decision denies the request."""

    reason: PolicyReason = PolicyReason.NO_PERMISSION
    default_suggestion: PolicySuggestion = PolicySuggestion.NONE

    def __init__(
        self,
        suggestion: PolicySuggestion | None = None,
        message: str | None = None,
        remaining_quota: Decimal | None = None,
        remaining_credit: Decimal | None = None,
    ) -> None:
        self.suggestion = suggestion or self.default_suggestion
        self.message = message or POLICY_MESSAGES[self.reason]
        self.remaining_quota = remaining_quota
        self.remaining_credit = remaining_credit
        super().__init__(f"{self.reason.value}: {self.message}")


class NoSessionError(PolicyDeniedError):
    """Raised when the request carries no user session."""

    reason = PolicyReason.NO_SESSION


class NoMembershipError(PolicyDeniedError):
    """Raised when the user is not an active member of the target scope."""

    reason = PolicyReason.NO_MEMBERSHIP


class NoPermissionError(PolicyDeniedError):
    """Raised when the user lacks a required permission key."""

    reason = PolicyReason.NO_PERMISSION
    default_suggestion = PolicySuggestion.CONTACT_ADMIN


class NoSubscriptionError(PolicyDeniedError):
    """Raised when the agency has no current subscription."""

    reason = PolicyReason.NO_SUBSCRIPTION
    default_suggestion = PolicySuggestion.UPGRADE


class FeatureDisabledError(PolicyDeniedError):
    """Raised when the feature is not enabled for the scope."""

    reason = PolicyReason.FEATURE_DISABLED
    default_suggestion = PolicySuggestion.UPGRADE


class LimitExceededError(PolicyDeniedError):
    """Raised when usage would exceed a HARD limit."""

    reason = PolicyReason.LIMIT_EXCEEDED
    default_suggestion = PolicySuggestion.UPGRADE


class InsufficientCreditsError(PolicyDeniedError):
    """Raised when the credit balance cannot cover the overage."""

    reason = PolicyReason.INSUFFICIENT_CREDITS
    default_suggestion = PolicySuggestion.TOPUP


_POLICY_ERRORS: dict[PolicyReason, type[PolicyDeniedError]] = {
    cls.reason: cls
    for cls in (
        NoSessionError,
        NoMembershipError,
        NoPermissionError,
        NoSubscriptionError,
        FeatureDisabledError,
        LimitExceededError,
        InsufficientCreditsError,
    )
}


def policy_error_for(decision: "Decision") -> PolicyDeniedError:
    """Map a denied Decision to its typed exception."""
    if decision.allowed or decision.reason is None:
        raise ValueError("Cannot build a policy error from an allowed decision")
    error_cls = _POLICY_ERRORS[decision.reason]
    return error_cls(
        suggestion=decision.suggestion,
        message=decision.message,
        remaining_quota=decision.remaining_quota,
        remaining_credit=decision.remaining_credit,
    )


# ============================================================================
# Catalog Errors
# ============================================================================


class UnknownFeatureError(MeteringError):
    """Raised when a feature key is not in the catalog."""

    def __init__(self, feature_key: str) -> None:
        self.feature_key = feature_key
        super().__init__(f"Unknown feature key: {feature_key}")


class UnknownSettingsNamespaceError(MeteringError):
    """Raised when a tenant settings namespace is not registered."""

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        super().__init__(f"Unknown settings namespace: {namespace}")


class SettingsValidationError(MeteringError):
    """Raised when a tenant settings document fails schema validation."""

    def __init__(self, namespace: str, message: str) -> None:
        self.namespace = namespace
        self.message = message
        super().__init__(f"Invalid settings for {namespace}: {message}")


# ============================================================================
# Infrastructure Errors
# ============================================================================


class WriteVerificationError(MeteringError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(MeteringError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(MeteringError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class ConcurrencyError(MeteringError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class JobAuthenticationError(MeteringError):
    """Raised when a job request carries a wrong or missing secret."""

    def __init__(self) -> None:
        super().__init__("Job secret missing or invalid")

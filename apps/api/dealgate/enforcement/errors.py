from __future__ import annotations

from typing import Any

from fastapi import status


class EnforcementError(Exception):
    """Base class for every error the enforcement core raises deliberately."""

    code = "enforcement_error"
    http_status = status.HTTP_400_BAD_REQUEST
    retryable = False
    # Internal errors are reported to callers generically and logged in full.
    internal = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        return "internal enforcement error" if self.internal else self.message


class EnforcementValidationError(EnforcementError):
    code = "validation_error"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(EnforcementError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: object) -> None:
        self.resource = resource
        self.identifier = str(identifier)
        super().__init__(f"{resource} not found", details={"resource": resource, "id": self.identifier})


class InvalidTransitionError(EnforcementError):
    """A state machine rejected the requested transition."""

    code = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT


class TokenExpiredError(InvalidTransitionError):
    code = "token_expired"


class TokenAlreadyConsumedError(InvalidTransitionError):
    code = "token_already_consumed"


class OverrideInvalidError(EnforcementError):
    """The supplied token was approved for a different deal, action or requester."""

    code = "override_invalid"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConcurrentModificationError(EnforcementError):
    """An atomic write lost a compare-and-swap race; nothing was persisted."""

    code = "concurrent_modification"
    http_status = status.HTTP_409_CONFLICT
    retryable = True


class UnclassifiedDecisionError(EnforcementError):
    code = "unclassified"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    internal = True


class LedgerImmutableError(EnforcementError):
    code = "ledger_immutable"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, record_type: str, operation: str) -> None:
        super().__init__(
            f"{record_type} records are append-only; {operation} rejected",
            details={"record_type": record_type, "operation": operation},
        )


class PolicyConfigError(EnforcementError):
    code = "policy_config_invalid"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    internal = True


class DeadlineExceededError(EnforcementError):
    code = "deadline_exceeded"
    http_status = status.HTTP_504_GATEWAY_TIMEOUT


class EnforcementStorageError(EnforcementError):
    code = "storage_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    internal = True

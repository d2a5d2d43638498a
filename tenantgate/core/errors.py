from __future__ import annotations


class TenantGateError(Exception):
    """Base error for TenantGate."""


class ValidationFailure(TenantGateError):
    """Malformed input, reported with the offending field."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class ConflictError(TenantGateError):
    """Target is already in the requested state."""


class NotFoundError(TenantGateError):
    """Referenced record does not exist in the caller's scope."""


class ImmutableRoleError(TenantGateError):
    """Built-in roles cannot be edited or deleted."""


class InfrastructureUnavailable(TenantGateError):
    """Backing store unreachable or timed out."""


class AuthenticationError(TenantGateError):
    """Credential rejected; callers only ever see a generic unauthenticated outcome."""

from __future__ import annotations


class TwofoldError(Exception):
    """Base error for Twofold."""


class AccessDenied(TwofoldError):
    """Principal lacks the membership or capability required for the operation."""


class NotFound(TwofoldError):
    """Resource does not exist, or must look like it does not to this principal."""


class ValidationError(TwofoldError):
    """Malformed or empty update, or an invalid lock configuration."""


class InvitePermissionError(ValidationError, AccessDenied):
    """Inviter lacks the manage capability required to issue invites."""


class InviteExpired(TwofoldError):
    """Invite is past its expiry and can no longer be accepted."""


class InviteAlreadyConsumed(TwofoldError):
    """Invite was already accepted or revoked."""


class TransientStoreError(TwofoldError):
    """Store stayed unreachable after bounded retries."""


class MigrationFailure(TwofoldError):
    """A schema step could not be applied; the process must not start."""


class TenantMismatchError(TwofoldError):
    """Tenant stamp mismatch; never move an existing row to another tenant."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors reported back to the caller of an intent."""

    code = "error"


class ValidationError(ChatError):
    code = "invalid_request"


class AuthError(ChatError):
    code = "auth_failed"


class BannedError(AuthError):
    pass


class AlreadyAuthenticated(AuthError):
    pass


class PermissionDenied(ChatError):
    code = "forbidden"


class ProtectedAccount(PermissionDenied):
    pass


class ConflictError(ChatError):
    code = "conflict"


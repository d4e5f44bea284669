"""Domain error taxonomy shared by the gateway services.

Each error maps to exactly one HTTP outcome at the router boundary:

    Unauthenticated        -> 401
    AccountNotFound        -> 402
    InsufficientBalance    -> 402
    UpstreamTransportError -> 500 (no debit)
    UpstreamProtocolError  -> 500 (no debit)
    StorageError           -> 500 (or logged only, during audit append)
    SignatureInvalid       -> 400
    InvalidRequest         -> 400
"""

from __future__ import annotations


class MeterError(Exception):
    """Base class for all gateway domain errors."""


class Unauthenticated(MeterError):
    """Credential missing, malformed, or rejected by the identity provider."""


class AccountNotFound(MeterError):
    """No profile exists for the resolved user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No account for user {user_id}")
        self.user_id = user_id


class InsufficientBalance(MeterError):
    """The account cannot cover the request."""

    def __init__(self, user_id: str, balance: int, requested: int | None = None) -> None:
        if requested is None:
            message = f"Insufficient tokens (balance={balance})"
        else:
            message = f"Insufficient tokens (balance={balance}, requested={requested})"
        super().__init__(message)
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class UpstreamTransportError(MeterError):
    """The upstream LLM call failed before a response was received."""


class UpstreamProtocolError(MeterError):
    """The upstream returned a response that could not be interpreted."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(MeterError):
    """The account or audit store is unavailable."""


class SignatureInvalid(MeterError):
    """A billing webhook failed signature verification."""


class InvalidRequest(MeterError):
    """The request body is not a well-formed completion request."""

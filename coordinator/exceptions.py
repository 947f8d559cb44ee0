"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (decryption failures, corrupt config rows, etc.). The global handler logs the
  full message at ERROR and returns a generic "Internal server error" (500).
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (bad paths, unknown config keys, etc.). The global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``ConflictError``: the requested transition is not allowed from the current
  state. Returned as 409 with a plain-language ``action`` hint for operators.
- ``NotFoundError``: a referenced row does not exist (404).
- ``LookupUnavailableError``: the external name-lookup service could not be
  reached. Callers degrade to unresolved names; this never reaches clients.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``coordinator/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class ConflictError(Exception):
    """Raised when a state transition conflicts with the current state."""

    def __init__(self, message: str, action: str | None = None) -> None:
        super().__init__(message)
        self.action = action


class NotFoundError(Exception):
    """Raised when a referenced entity does not exist."""


class LookupUnavailableError(Exception):
    """Raised by the name-lookup client when the remote service fails."""

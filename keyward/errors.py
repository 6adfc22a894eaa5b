"""
keyward - errors

Failure taxonomy shared by the controller side. Every error carries the host
(and, where it applies, the login) it belongs to so batch results can be
reported per target.
"""

from __future__ import annotations

from typing import Optional


class KeywardError(RuntimeError):
    def __init__(
        self, message: str, *, host: Optional[str] = None, login: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.host = host
        self.login = login

    def target(self) -> str:
        if self.host and self.login:
            return f"{self.host}:{self.login}"
        return self.host or self.login or "-"


class ConfigError(KeywardError):
    """Bad or missing configuration."""


class InventoryError(ConfigError):
    """The desired-state graph violates one of its invariants."""


class ConnectivityError(KeywardError):
    """Unreachable, auth rejected, host key mismatch, timeout or cancelled.

    Retryable by re-running reconciliation.
    """


class ProtocolError(KeywardError):
    """The agent answered something we cannot trust; host state is unknown."""


class DataIntegrityError(KeywardError):
    """A grant cannot be rendered into a key line. Fails only its login."""

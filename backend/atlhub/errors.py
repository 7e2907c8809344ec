"""Errors raised while producing authenticated clients."""

from __future__ import annotations


class AtlClientError(RuntimeError):
    """Base class; `code` is a short machine-readable tag."""

    code = "client_error"

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class CredentialUnavailable(AtlClientError):
    """No stored credentials and the authorization dance did not complete."""

    code = "credential_unavailable"


class RefreshFailed(AtlClientError):
    """The silent refresh-token exchange failed."""

    code = "refresh_failed"


class FactoryError(AtlClientError):
    """A provider client factory raised while building a client."""

    code = "factory_error"


class UnknownProvider(AtlClientError):
    code = "unknown_provider"

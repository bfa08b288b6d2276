"""Summary: Error taxonomy for provider exchanges and the authorization flow.

Importance: Lets the session engine pick a recovery policy per failure class.
Alternatives: Inspect exception messages at every call site.
"""

from __future__ import annotations


PROVIDER_OUTAGE_DESCRIPTION = "SystemDisabled"


class AuthorizationError(RuntimeError):
    """Summary: Structured OAuth error body returned by the token endpoint.

    Importance: Separates rejected credentials and provider outages from transport failures.
    Alternatives: Raise a generic RuntimeError with the body text.
    """

    def __init__(self, error_code: str, error_description: str) -> None:
        super().__init__(error_description)
        self.error_code = error_code
        self.error_description = error_description

    @property
    def is_provider_outage(self) -> bool:
        return self.error_description == PROVIDER_OUTAGE_DESCRIPTION

    def __str__(self) -> str:
        return f"{self.error_code}: {self.error_description}"


class TransportError(RuntimeError):
    """Summary: Network, timeout, or unparseable response from the token endpoint.

    Importance: Treated as transient so an existing session is never destroyed by it.
    Alternatives: Merge with AuthorizationError.
    """


class StateMismatchError(RuntimeError):
    """Summary: OAuth state returned to the callback does not match the state cookie."""

    def __init__(self, expected: str | None, received: str | None) -> None:
        super().__init__(f"State mismatch error. Expected {expected}, got {received}")
        self.expected = expected
        self.received = received


class ConfigurationError(ValueError):
    """Summary: Required configuration is missing or invalid."""

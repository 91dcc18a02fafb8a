"""Error taxonomy for the moderation subsystem.

None of these ever reach the chat pipeline: the cascade converts every one
of them into a fail-open verdict, and the cache/persistence layers log and
degrade instead of raising.
"""

from typing import Optional


class ModerationError(Exception):
    """Base class for moderation failures."""


class ConfigurationError(ModerationError):
    """A provider client is missing or could not be initialised."""


class ProviderQuotaError(ModerationError):
    """The provider refused the call for quota/rate reasons.

    ``retry_delay`` is the server-suggested wait in seconds, when one was sent.
    """

    def __init__(self, message: str, retry_delay: Optional[float] = None, model: Optional[str] = None):
        super().__init__(message)
        self.retry_delay = retry_delay
        self.model = model


class ProviderTransportError(ModerationError):
    """Network, HTTP or parse failure talking to a provider."""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class CacheUnavailable(ModerationError):
    """The shared cache could not be reached."""


class PersistenceError(ModerationError):
    """The durable reputation store rejected a read or write."""

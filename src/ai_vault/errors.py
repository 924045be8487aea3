"""Exception types raised by providers and the archive core."""


class VaultError(Exception):
    """Base class for all ai-vault errors."""


class ProviderError(VaultError):
    """A provider could not complete a request."""


class AuthenticationError(ProviderError):
    """Credentials were missing, expired or rejected."""


class NotFoundError(ProviderError):
    """The requested conversation does not exist (or is no longer visible)."""


class RateLimitError(ProviderError):
    """The remote backend asked us to slow down (HTTP 429 or equivalent).

    ``retry_after`` is the server-supplied delay in seconds, when one was sent.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class StorageError(VaultError):
    """The local archive could not be updated."""


class IndexFlushError(StorageError):
    """One or more providers' pending index updates failed to flush."""

    def __init__(self, failures: dict[str, Exception]):
        self.failures = failures
        detail = ", ".join(f"{name}: {err}" for name, err in failures.items())
        super().__init__(f"Failed to flush index for {detail}")

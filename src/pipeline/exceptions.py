class ProviderError(Exception):
    pass


class ProviderTransientError(ProviderError):
    """Timeout, connection failure, 5xx or malformed body: retried next cycle."""


class ProviderRateLimitedError(ProviderTransientError):
    """HTTP 429. The caller throttles the provider instead of retrying."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class VettingWorkflowError(Exception):
    """The external vetting workflow could not accept or answer a request."""

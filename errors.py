"""
Error types shared by the ingest clients, issue sources, cache and aggregator.

Configuration errors are raised before any network work and always reach the caller.
Fetch errors are raised by the wire clients and degraded per repository or team by callers.
"""
from typing import Optional


class ConfigurationError(ValueError):
    """Missing credentials, unparsable repository names, unsupported providers or bad date windows."""


class SourceFetchError(RuntimeError):
    """A remote backend call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GitHubAPIError(SourceFetchError):
    pass


class LinearAPIError(SourceFetchError):
    pass


class AuthenticationError(SourceFetchError):
    """Credentials were rejected (HTTP 401/403)."""


class CacheQuotaExceededError(RuntimeError):
    """The cache medium refused a write because its storage quota is exhausted."""


__all__ = [
    "ConfigurationError",
    "SourceFetchError",
    "GitHubAPIError",
    "LinearAPIError",
    "AuthenticationError",
    "CacheQuotaExceededError",
]

"""
Exception hierarchy for AmzPilot.

Every failure the monetization pipeline can surface maps onto one of these
classes. Batch runs catch them at the item boundary; manual single-page
actions let them propagate so the operator sees the message directly.
"""

from __future__ import annotations


class PilotError(Exception):
    """Base exception for all AmzPilot errors."""


class ConfigError(PilotError):
    """Raised when the settings file or environment is invalid."""


# ---------------------------------------------------------------------------
# Network / CMS
# ---------------------------------------------------------------------------


class ConnectivityError(PilotError):
    """Raised when a request cannot reach its target through any route."""

    def __init__(self, message: str, origin: str = ""):
        self.origin = origin
        super().__init__(message)


class CMSError(PilotError):
    """Base exception for WordPress REST API errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class CMSAuthenticationError(CMSError):
    """Raised on 401/403 responses."""


class CMSNotFoundError(CMSError):
    """Raised on 404 responses."""


class CMSServerError(CMSError):
    """Raised on any other non-2xx response."""


class IdentifierResolutionError(CMSError):
    """Raised when a post id cannot be resolved from its id, slug or public page."""


class SitemapError(PilotError):
    """Raised when a sitemap cannot be fetched or parsed."""


# ---------------------------------------------------------------------------
# AI providers
# ---------------------------------------------------------------------------


class AIError(PilotError):
    """Base exception for AI completion failures."""


class MissingCredentialError(AIError):
    """Raised when a provider is called without an API key."""


class RateLimitedError(AIError):
    """Raised on 429 / quota / overloaded responses. Retried with backoff."""

    def __init__(self, message: str, status_code: int = 429):
        self.status_code = status_code
        super().__init__(message)


class AIProviderError(AIError):
    """Raised on any other provider-side failure."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class MalformedOutputError(AIError):
    """Raised when the model response contains no parseable JSON."""

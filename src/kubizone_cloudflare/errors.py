"""Error taxonomy shared by the reconciliation engine.

ValidationError: malformed desired state, reported on the offending resource.
TransientError:  retryable provider failure (network, timeout, 5xx, 429).
PermanentError:  non-retryable provider failure for a single operation.
FatalError:      the process cannot talk to one of its collaborators at all.
"""

from __future__ import annotations

from typing import List, Optional


class KubizoneCloudflareError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(KubizoneCloudflareError):
    """Desired state that can never be applied until it is corrected upstream."""


class ProviderError(KubizoneCloudflareError):
    """Failure reported by, or while talking to, the DNS provider."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, codes: Optional[List[int]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.codes = codes or []


class TransientError(ProviderError):
    """Retryable failure: the whole zone backs off and tries again later."""


class RateLimitedError(TransientError):
    """Provider rate limit hit. `retry_after` is in seconds when known."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class PermanentError(ProviderError):
    """Non-retryable failure for a single operation."""


class NotFoundError(PermanentError):
    """Target of an update or delete no longer exists at the provider."""


class AuthenticationError(PermanentError):
    """Provider rejected the credentials."""


class FatalError(KubizoneCloudflareError):
    """A collaborator is wholly unreachable or unusable."""


class StatusWriteError(KubizoneCloudflareError):
    """Status could not be written for a reason other than a conflict."""


class ConflictError(StatusWriteError):
    """Status write lost a race against a concurrent modification."""

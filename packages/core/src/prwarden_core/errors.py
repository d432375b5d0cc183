"""Error taxonomy for remote calls.

Provider exceptions (PyGithub, model SDKs) are translated into these at the
boundary where it is cheap to tell them apart. The retry controller classifies
by type first and by message/status second, so untranslated errors still get a
sensible profile.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class ProviderError(Exception):
    """A remote call failed. Carries what the provider told us about it."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        headers: Optional[Mapping[str, Any]] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.headers = dict(headers or {})
        self.data = data


class TransientProviderError(ProviderError):
    """Network failure or 5xx. Retried with the standard profile."""


class QuotaExceededError(ProviderError):
    """429, secondary rate limit, or provider quota exhaustion. Retried with the quota profile."""


class HistoryNotFoundError(ProviderError):
    """The comparison base no longer exists (force-push, rebase). Never retried."""


class ValidationError(ValueError):
    """Malformed location, body or id. Fails fast and is never retried."""

"""
Error taxonomy for the crawl → analyze → index pipeline.

Fetch and detail errors are caught per listing item by the crawl service;
analysis errors are recorded on the attachment; persistence errors drive the
retry policy in ``konarae.core.shared.retry``.
"""

from typing import Literal, Optional

FetchErrorKind = Literal["transient", "blocked", "timeout"]
PersistenceErrorKind = Literal["transient", "permanent"]


class KonaraeError(Exception):
    """Base class for domain errors raised by the crawler service."""


class FetchError(KonaraeError):
    """Raised by the fetch adapter when a single fetch attempt fails."""

    def __init__(
        self,
        message: str,
        kind: FetchErrorKind = "transient",
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status_code = status_code

    @property
    def is_timeout(self) -> bool:
        return self.kind == "timeout"


class DetailFetchError(KonaraeError):
    """Raised when an announcement detail page cannot be resolved at all."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class AnalysisError(KonaraeError):
    """Raised when document analysis or field extraction fails."""


class InvalidStateTransition(KonaraeError):
    """Raised when an analysis state-machine guard rejects a request."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class PersistenceError(KonaraeError):
    """Database failure classified for the retry policy."""

    def __init__(self, message: str, kind: PersistenceErrorKind = "permanent"):
        super().__init__(message)
        self.kind = kind


class StorageError(KonaraeError):
    """Raised when object storage upload or URL signing fails."""

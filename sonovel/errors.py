from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import BatchResult


class NovelError(Exception):
    """Base class for every error raised by the crawler."""


class ConfigError(NovelError):
    """A rule file, rule id or config file is missing or unusable. Never retried."""


class ExtractionError(NovelError):
    """A rule is well-formed JSON but cannot be applied (e.g. a bad filter regex)."""


class TransformError(NovelError):
    """The sandboxed @js: transform failed to compile or run."""


class DownloadCancelled(NovelError):
    """The cancellation token fired while work was pending or sleeping."""

    def __init__(self, message: str = "download cancelled") -> None:
        super().__init__(message)


class FetchError(NovelError):
    """All fetch attempts for a URL failed.

    Carries the attempt count, the last status code seen (if any) and the
    last underlying exception (if any).
    """

    def __init__(
        self,
        url: str,
        attempts: int,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.url = url
        self.attempts = attempts
        self.cause = cause
        self.status_code = status_code
        if cause is not None:
            reason = f"{type(cause).__name__}: {cause}"
        else:
            reason = f"HTTP_{status_code}"
        super().__init__(f"request to {url} failed after {attempts} attempt(s): {reason}")

    @property
    def timed_out(self) -> bool:
        return is_timeout(self.cause)


class BatchError(NovelError):
    """A chapter batch ended in CANCELLED or FAILED."""

    def __init__(self, result: "BatchResult") -> None:
        self.result = result
        super().__init__(
            f"batch {result.state.value}: {result.completed}/{result.total} completed, "
            f"{len(result.errors)} error(s)"
        )


_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline exceeded")


def is_timeout(exc: Optional[BaseException]) -> bool:
    """True when the exception (or its cause) looks like a network timeout."""
    if exc is None:
        return False
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, FetchError):
        return exc.timed_out
    # requests and curl_cffi both name their timeout classes "...Timeout"
    if "Timeout" in type(exc).__name__:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TIMEOUT_MARKERS)

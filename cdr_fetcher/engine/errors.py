"""Error taxonomy shared by the fetch engine."""

from __future__ import annotations

import httpx


class FetcherError(Exception):
    """Base class for every error raised by the fetch engine."""


class AuthError(FetcherError):
    """The credential exchange with the identity endpoint failed."""


class HttpError(FetcherError):
    """A request to the remote API returned an unusable response."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientHttpError(HttpError):
    """Timeouts, connection failures, HTTP 429 and 5xx; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self.retry_after = retry_after


class PermanentHttpError(HttpError):
    """4xx other than 429; retrying would not help."""


class MalformedResponseError(PermanentHttpError):
    """The body was not the JSON document shape we expect."""


class RetryExhaustedError(FetcherError):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class PaginationLimitError(FetcherError):
    """A cursor chain ran past the page ceiling or looped back on itself."""

    def __init__(self, message: str, *, url: str, pages: int) -> None:
        super().__init__(message)
        self.url = url
        self.pages = pages


class AssemblyError(FetcherError):
    """One of the fetches needed to build a record failed."""

    def __init__(self, key: str, resource: str, cause: BaseException) -> None:
        super().__init__(f"{resource} fetch failed for {key}: {describe_error(cause)}")
        self.key = key
        self.resource = resource
        self.cause = cause


class FetchCancelledError(FetcherError):
    """A sibling fetch for the same key failed, so this one stopped early."""


class SinkError(FetcherError):
    """Persisting a record or a failure entry failed."""


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, TransientHttpError):
        return True
    return isinstance(error, httpx.TransportError)


def describe_error(error: BaseException) -> str:
    """Render ``Type: message`` for reports, unwrapping retry exhaustion."""

    if isinstance(error, AssemblyError):
        return f"{type(error).__name__}: {error}"
    if isinstance(error, RetryExhaustedError):
        return f"{type(error).__name__}({error.attempts}): {describe_error(error.last_error)}"
    message = str(error) or error.__class__.__name__
    return f"{type(error).__name__}: {message}"


__all__ = [
    "AssemblyError",
    "AuthError",
    "FetchCancelledError",
    "FetcherError",
    "HttpError",
    "MalformedResponseError",
    "PaginationLimitError",
    "PermanentHttpError",
    "RetryExhaustedError",
    "SinkError",
    "TransientHttpError",
    "describe_error",
    "is_retryable",
]

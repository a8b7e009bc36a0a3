"""Engine components: token cache, retry policy, pager, assembler, sinks."""

from .assembler import MergedRecord, RecordAssembler
from .auth import ClientCredentialsExchange, Credential, TokenProvider
from .errors import (
    AssemblyError,
    AuthError,
    FetcherError,
    MalformedResponseError,
    PaginationLimitError,
    PermanentHttpError,
    RetryExhaustedError,
    SinkError,
    TransientHttpError,
)
from .fetcher import Page, PageFetcher
from .retry import RetryExecutor
from .thread_pool import ThreadPoolManager

__all__ = [
    "AssemblyError",
    "AuthError",
    "ClientCredentialsExchange",
    "Credential",
    "FetcherError",
    "MalformedResponseError",
    "MergedRecord",
    "Page",
    "PageFetcher",
    "PaginationLimitError",
    "PermanentHttpError",
    "RecordAssembler",
    "RetryExecutor",
    "RetryExhaustedError",
    "SinkError",
    "ThreadPoolManager",
    "TokenProvider",
    "TransientHttpError",
]

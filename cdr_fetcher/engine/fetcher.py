"""Authenticated JSON page fetching and cursor-following pagination."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event
from typing import Any

import httpx
import structlog

from .auth import TokenProvider
from .errors import (
    FetchCancelledError,
    MalformedResponseError,
    PaginationLimitError,
    PermanentHttpError,
    TransientHttpError,
)
from .retry import RetryExecutor

DEFAULT_ITEMS_FIELD = "value"
DEFAULT_NEXT_LINK_FIELD = "@odata.nextLink"


@dataclass(slots=True)
class Page:
    """One unit of a paginated collection."""

    items: list[Any] = field(default_factory=list)
    next_cursor: str | None = None


class PageFetcher:
    """Issue authenticated GETs through the retry policy and decode pages."""

    def __init__(
        self,
        token_provider: TokenProvider,
        retry: RetryExecutor,
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        items_field: str = DEFAULT_ITEMS_FIELD,
        next_link_field: str = DEFAULT_NEXT_LINK_FIELD,
        max_pages: int = 500,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        self.token_provider = token_provider
        self.retry = retry
        self.items_field = items_field
        self.next_link_field = next_link_field
        self.max_pages = max_pages
        self.logger = logger or structlog.get_logger("cdr_fetcher.fetcher")
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch_document(self, url: str, cancel: Event | None = None) -> dict[str, Any]:
        return self.retry.execute(lambda: self._get_json(url), label=url, cancel=cancel)

    def fetch_page(self, url: str, cancel: Event | None = None) -> Page:
        document = self.fetch_document(url, cancel)
        items = document.get(self.items_field)
        if items is None:
            items = []
        elif not isinstance(items, list):
            raise MalformedResponseError(
                f"Field {self.items_field!r} is {type(items).__name__}, expected a list",
                url=url,
            )
        cursor = document.get(self.next_link_field)
        if cursor is not None and not isinstance(cursor, str):
            raise MalformedResponseError(
                f"Field {self.next_link_field!r} is not a string", url=url
            )
        return Page(items=items, next_cursor=cursor or None)

    def fetch_all(self, first_url: str, cancel: Event | None = None) -> list[Any]:
        """Concatenate every page reachable from ``first_url`` in page order.

        Setting ``cancel`` stops the walk before the next page or retry.
        """

        results: list[Any] = []
        seen: set[str] = set()
        url: str | None = first_url
        pages = 0
        while url:
            if cancel is not None and cancel.is_set():
                raise FetchCancelledError(f"Cancelled {first_url} after {pages} pages")
            if pages >= self.max_pages:
                raise PaginationLimitError(
                    f"Stopped after {pages} pages; cursor chain did not end",
                    url=first_url,
                    pages=pages,
                )
            if url in seen:
                raise PaginationLimitError(
                    f"Cursor {url} was already visited", url=first_url, pages=pages
                )
            seen.add(url)
            page = self.fetch_page(url, cancel)
            pages += 1
            results.extend(page.items)
            self.logger.debug("page_fetched", url=url, page=pages, items=len(page.items))
            url = page.next_cursor
        return results

    # ------------------------------------------------------------------
    def _get_json(self, url: str) -> dict[str, Any]:
        credential = self.token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/json",
        }
        try:
            response = self._client.get(url, headers=headers)
        except httpx.TransportError as exc:
            raise TransientHttpError(f"{type(exc).__name__}: {exc}", url=url) from exc
        self._raise_for_status(response, url)
        try:
            document = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Response body is not valid JSON", url=url, status_code=response.status_code
            ) from exc
        if not isinstance(document, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(document).__name__}",
                url=url,
                status_code=response.status_code,
            )
        return document

    def _raise_for_status(self, response: httpx.Response, url: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = f"HTTP {status} for {url}"
        if self._is_transient(status):
            raise TransientHttpError(
                message,
                url=url,
                status_code=status,
                retry_after=_retry_after(response),
            )
        if status == 401:
            self.token_provider.invalidate()
        raise PermanentHttpError(message, url=url, status_code=status)

    @staticmethod
    def _is_transient(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


__all__ = ["Page", "PageFetcher"]

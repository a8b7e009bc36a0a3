"""Build one merged call record from its base document and sub-collections."""

from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Executor, Future, wait
from dataclasses import dataclass
from functools import partial
from threading import Event
from types import MappingProxyType
from typing import Any, Callable, Mapping
from urllib.parse import quote

import structlog

from .errors import AssemblyError, describe_error
from .fetcher import PageFetcher

BASE_RESOURCE = "base"

# Output field name -> path (and query) relative to the record URL.
DEFAULT_SUBRESOURCES: Mapping[str, str] = MappingProxyType(
    {
        "participants_v2": "participants_v2",
        "sessions": "sessions?$expand=segments",
    }
)


@dataclass(frozen=True, slots=True)
class MergedRecord:
    """Immutable result of assembling one key."""

    key: str
    base_fields: Mapping[str, Any]
    sub_collections: Mapping[str, tuple[Any, ...]]

    def to_document(self) -> dict[str, Any]:
        document = dict(self.base_fields)
        for name, items in self.sub_collections.items():
            document[name] = list(items)
        return document


class RecordAssembler:
    """Fetch the base resource plus every paginated sub-resource for a key.

    When an executor is supplied the fetches run concurrently and the merge
    waits for all of them; otherwise they run one after another. Either way a
    single failed fetch fails the whole key.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        base_url: str,
        *,
        subresources: Mapping[str, str] = DEFAULT_SUBRESOURCES,
        executor: Executor | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if len(subresources) < 2:
            raise ValueError("At least two sub-resources are required")
        if BASE_RESOURCE in subresources:
            raise ValueError(f"Sub-resource name {BASE_RESOURCE!r} is reserved")
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.subresources = dict(subresources)
        self.executor = executor
        self.logger = logger or structlog.get_logger("cdr_fetcher.assembler")

    def record_url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key, safe='')}"

    def assemble(self, key: str) -> MergedRecord:
        record_url = self.record_url(key)
        # Set once any fetch fails so the others stop between pages and retries.
        stop = Event()
        jobs: dict[str, Callable[[], Any]] = {
            BASE_RESOURCE: lambda: self.fetcher.fetch_document(record_url, stop)
        }
        for name, path in self.subresources.items():
            jobs[name] = self._collection_job(f"{record_url}/{path}", stop)

        if self.executor is None:
            results = self._run_sequential(key, jobs)
        else:
            results = self._run_concurrent(key, jobs, stop)

        base = results.pop(BASE_RESOURCE)
        record = MergedRecord(
            key=key,
            base_fields=MappingProxyType(dict(base)),
            sub_collections=MappingProxyType(
                {name: tuple(results[name]) for name in self.subresources}
            ),
        )
        self.logger.debug(
            "record_assembled",
            key=key,
            **{name: len(items) for name, items in record.sub_collections.items()},
        )
        return record

    def _collection_job(self, url: str, stop: Event) -> Callable[[], list[Any]]:
        return lambda: self.fetcher.fetch_all(url, stop)

    def _run_sequential(self, key: str, jobs: dict[str, Callable[[], Any]]) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for name, job in jobs.items():
            try:
                results[name] = job()
            except Exception as exc:  # noqa: BLE001
                raise AssemblyError(key, name, exc) from exc
        return results

    def _run_concurrent(
        self, key: str, jobs: dict[str, Callable[[], Any]], stop: Event
    ) -> dict[str, Any]:
        assert self.executor is not None
        futures: dict[Future[Any], str] = {
            self.executor.submit(job): name for name, job in jobs.items()
        }
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in futures if f in done and f.exception() is not None]
        if not failed:
            return {name: future.result() for future, name in futures.items()}

        stop.set()
        for future in pending:
            if not future.cancel():
                future.add_done_callback(partial(self._log_abandoned, key, futures[future]))
        # Report the first failing resource in declaration order.
        first = min(failed, key=lambda f: list(jobs).index(futures[f]))
        error = first.exception()
        raise AssemblyError(key, futures[first], error) from error

    def _log_abandoned(self, key: str, resource: str, future: Future[Any]) -> None:
        error = future.exception()
        self.logger.debug(
            "abandoned_fetch_finished",
            key=key,
            resource=resource,
            error=describe_error(error) if error is not None else None,
        )


__all__ = ["BASE_RESOURCE", "DEFAULT_SUBRESOURCES", "MergedRecord", "RecordAssembler"]

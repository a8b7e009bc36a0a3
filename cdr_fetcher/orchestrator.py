"""Run the fetch-and-merge pipeline for many keys under a concurrency limit."""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable, Optional, Protocol, Union

import httpx
import structlog

from .config import AppConfig
from .engine import (
    ClientCredentialsExchange,
    FetcherError,
    MergedRecord,
    PageFetcher,
    RecordAssembler,
    RetryExecutor,
    ThreadPoolManager,
    TokenProvider,
)
from .engine.errors import describe_error
from .engine.exporter import BaseFailureSink, BaseRecordSink, CsvFailureReport, JsonFileSink
from .ui import ProgressReporter


class KeyState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[KeyState, frozenset[KeyState]] = {
    KeyState.PENDING: frozenset({KeyState.IN_FLIGHT}),
    KeyState.IN_FLIGHT: frozenset({KeyState.SUCCEEDED, KeyState.FAILED}),
    KeyState.SUCCEEDED: frozenset(),
    KeyState.FAILED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Success:
    path: Path | None
    skipped: bool = False


@dataclass(frozen=True, slots=True)
class Failure:
    reason: str
    error_type: str


Outcome = Union[Success, Failure]


@dataclass(frozen=True, slots=True)
class WorkItem:
    """The single terminal outcome for one key."""

    key: str
    outcome: Outcome

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Success)


class Assembler(Protocol):
    def assemble(self, key: str) -> MergedRecord: ...


class KeyTracker:
    """Thread-safe per-key state machine with an in-flight high-water mark."""

    def __init__(self) -> None:
        self._states: dict[str, KeyState] = {}
        self._lock = Lock()
        self.in_flight = 0
        self.peak_in_flight = 0

    def register(self, key: str) -> bool:
        with self._lock:
            if key in self._states:
                return False
            self._states[key] = KeyState.PENDING
            return True

    def transition(self, key: str, target: KeyState) -> None:
        with self._lock:
            current = self._states.get(key)
            if current is None:
                raise KeyError(f"Unknown key: {key}")
            if target not in _TRANSITIONS[current]:
                raise RuntimeError(f"Illegal transition for {key}: {current.value} -> {target.value}")
            self._states[key] = target
            if target is KeyState.IN_FLIGHT:
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            elif current is KeyState.IN_FLIGHT:
                self.in_flight -= 1

    def state(self, key: str) -> KeyState:
        with self._lock:
            return self._states[key]

    def counts(self) -> dict[KeyState, int]:
        with self._lock:
            counts = {state: 0 for state in KeyState}
            for state in self._states.values():
                counts[state] += 1
            return counts


@dataclass
class RunSummary:
    run_date: date
    items: list[WorkItem] = field(default_factory=list)
    duplicates: int = 0
    peak_in_flight: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.succeeded and not item.outcome.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.items if item.succeeded and item.outcome.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.succeeded)

    @property
    def failed_keys(self) -> list[str]:
        return [item.key for item in self.items if not item.succeeded]

    def as_dict(self) -> dict[str, int]:
        return {
            "total": len(self.items),
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "duplicates": self.duplicates,
        }


class Orchestrator:
    """Drive one assembly pipeline per key, at most ``max_concurrency`` at once.

    Each key ends in exactly one of two places: its record in the record sink,
    or a line in the failure sink. Errors never cross the per-key boundary.
    """

    def __init__(
        self,
        assembler: Assembler,
        record_sink: BaseRecordSink,
        failure_sink: BaseFailureSink,
        *,
        max_concurrency: int = 4,
        skip_existing: bool = False,
        executor: Executor | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.assembler = assembler
        self.record_sink = record_sink
        self.failure_sink = failure_sink
        self.max_concurrency = max_concurrency
        self.skip_existing = skip_existing
        self.executor = executor
        self.logger = (logger or structlog.get_logger("cdr_fetcher")).bind(component="orchestrator")
        self.tracker = KeyTracker()

    def run(
        self,
        keys: Iterable[str],
        run_date: date,
        progress: ProgressReporter | None = None,
    ) -> RunSummary:
        self.tracker = tracker = KeyTracker()
        summary = RunSummary(run_date=run_date)
        ordered: list[str] = []
        for key in keys:
            if tracker.register(key):
                ordered.append(key)
            else:
                summary.duplicates += 1
        if summary.duplicates:
            self.logger.warning("duplicate_keys_dropped", count=summary.duplicates)

        progress = progress or ProgressReporter(enabled=False)
        progress.start(len(ordered))
        self.logger.info(
            "run_started",
            run_date=run_date.isoformat(),
            keys=len(ordered),
            max_concurrency=self.max_concurrency,
            skip_existing=self.skip_existing,
        )
        started = time.monotonic()

        owned = self.executor is None
        executor = self.executor or ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="cdr-keys"
        )
        pending_keys = iter(ordered)
        in_flight: dict[Future[WorkItem], str] = {}
        try:
            while True:
                while len(in_flight) < self.max_concurrency:
                    key = next(pending_keys, None)
                    if key is None:
                        break
                    tracker.transition(key, KeyState.IN_FLIGHT)
                    in_flight[executor.submit(self.process_key, key, run_date)] = key
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    key = in_flight.pop(future)
                    item = self._collect(key, future)
                    self._finish(item, progress)
                    summary.items.append(item)
        finally:
            if owned:
                executor.shutdown(wait=True)
            progress.close()

        summary.peak_in_flight = tracker.peak_in_flight
        self.logger.info(
            "run_finished",
            elapsed=round(time.monotonic() - started, 3),
            **summary.as_dict(),
        )
        return summary

    def process_key(self, key: str, run_date: date) -> WorkItem:
        """Assemble and persist one key; always returns, never raises."""

        try:
            if self.skip_existing and self.record_sink.exists(key, run_date):
                self.logger.info("key_skipped_existing", key=key)
                return WorkItem(key, Success(path=None, skipped=True))
            record = self.assembler.assemble(key)
            path = self.record_sink.write(record, run_date)
            return WorkItem(key, Success(path=path))
        except FetcherError as exc:
            return WorkItem(key, Failure(reason=describe_error(exc), error_type=type(exc).__name__))
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("key_unexpected_error", key=key)
            return WorkItem(key, Failure(reason=describe_error(exc), error_type=type(exc).__name__))

    def _collect(self, key: str, future: Future[WorkItem]) -> WorkItem:
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001
            return WorkItem(key, Failure(reason=describe_error(exc), error_type=type(exc).__name__))

    def _finish(self, item: WorkItem, progress: ProgressReporter) -> None:
        outcome = item.outcome
        if isinstance(outcome, Success):
            self.tracker.transition(item.key, KeyState.SUCCEEDED)
            if not outcome.skipped:
                self.logger.info("key_succeeded", key=item.key, path=str(outcome.path))
            progress.advance(key=item.key, succeeded=True, skipped=outcome.skipped)
            return
        self.tracker.transition(item.key, KeyState.FAILED)
        self.logger.error("key_failed", key=item.key, error_type=outcome.error_type, reason=outcome.reason)
        try:
            self.failure_sink.append(item.key, outcome.reason)
        except FetcherError as exc:
            self.logger.critical("failure_report_unwritable", key=item.key, error=str(exc))
        progress.advance(key=item.key, failed=True)


class FetchPipeline:
    """Wire the engine from settings and own its HTTP client and thread pools."""

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Optional[Callable[[float], None]] = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        identity = config.require_identity()
        self.config = config
        self.logger = logger or structlog.get_logger("cdr_fetcher")
        self.client = httpx.Client(
            timeout=config.api.timeout, transport=transport, follow_redirects=True
        )
        exchange = ClientCredentialsExchange(
            identity.tenant_id,
            identity.client_id,
            identity.client_secret,
            authority_host=identity.authority_host,
            scope=identity.scope,
            client=self.client,
        )
        self.token_provider = TokenProvider(
            exchange,
            refresh_margin=timedelta(seconds=identity.refresh_margin_seconds),
            logger=self.logger.bind(component="auth"),
        )
        self.retry = RetryExecutor(
            config.retry.max_attempts,
            config.retry.backoff_base,
            jitter=config.retry.jitter,
            max_delay=config.retry.max_delay,
            sleep=sleep,
            logger=self.logger.bind(component="retry"),
        )
        self.fetcher = PageFetcher(
            self.token_provider,
            self.retry,
            client=self.client,
            items_field=config.api.items_field,
            next_link_field=config.api.next_link_field,
            max_pages=config.api.max_pages,
            logger=self.logger.bind(component="fetcher"),
        )
        self.pools = ThreadPoolManager(config.run.max_concurrency, fanout=3)
        self.assembler = RecordAssembler(
            self.fetcher,
            config.api.base_url,
            executor=self.pools.subresources() if config.api.parallel_subresources else None,
            logger=self.logger.bind(component="assembler"),
        )
        self.record_sink = JsonFileSink(config.paths.output_dir, config.paths.partition_format)

    def run(
        self,
        keys: Iterable[str],
        run_date: date,
        *,
        skip_existing: bool | None = None,
        progress: ProgressReporter | None = None,
    ) -> RunSummary:
        failure_sink = CsvFailureReport(self.config.paths.failure_report_for(run_date))
        orchestrator = Orchestrator(
            self.assembler,
            self.record_sink,
            failure_sink,
            max_concurrency=self.config.run.max_concurrency,
            skip_existing=self.config.run.skip_existing if skip_existing is None else skip_existing,
            executor=self.pools.keys(),
            logger=self.logger,
        )
        return orchestrator.run(keys, run_date, progress)

    def close(self) -> None:
        self.pools.shutdown()
        self.client.close()

    def __enter__(self) -> "FetchPipeline":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


__all__ = [
    "Failure",
    "FetchPipeline",
    "KeyState",
    "KeyTracker",
    "Orchestrator",
    "RunSummary",
    "Success",
    "WorkItem",
]

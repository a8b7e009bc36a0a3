"""Shared fixtures: settings builders and a scripted fake Graph API."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable

import httpx
import pytest

from cdr_fetcher.config import AppConfig
from cdr_fetcher.engine import PageFetcher, RetryExecutor, TokenProvider
from cdr_fetcher.engine.auth import ClientCredentialsExchange

BASE_URL = "https://graph.test/v1.0/communications/callRecords"
AUTHORITY = "https://login.test"
TENANT = "tenant-1"


def _normalise(url: str) -> str:
    return str(httpx.URL(url))


class FakeGraph:
    """In-memory stand-in for the identity endpoint and the callRecords API.

    Each route holds a queue of responses; the last one repeats once the
    queue is down to a single entry. A response may be a JSON-able value, an
    ``httpx.Response`` or an exception instance to raise from the transport.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Any]] = {}
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_response: Callable[[int], httpx.Response] | None = None
        self._lock = Lock()

    def add(self, url: str, *responses: Any) -> None:
        self.routes[_normalise(url)] = list(responses)

    def record(self, key: str, document: dict[str, Any], participants: list | None = None, sessions: list | None = None) -> None:
        """Register a call record with single-page sub-collections."""

        self.add(f"{BASE_URL}/{key}", document)
        self.add(f"{BASE_URL}/{key}/participants_v2", {"value": participants or []})
        self.add(f"{BASE_URL}/{key}/sessions?$expand=segments", {"value": sessions or []})

    def calls_to(self, url: str) -> int:
        target = _normalise(url)
        return sum(1 for request in self.requests if str(request.url) == target)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            if request.url.path.endswith("/oauth2/v2.0/token"):
                self.token_calls += 1
                count = self.token_calls
                if self.token_response is not None:
                    return self.token_response(count)
                return httpx.Response(200, json={"access_token": f"token-{count}", "expires_in": 3600})
            queue = self.routes.get(str(request.url))
            if queue is None:
                return httpx.Response(404, json={"error": {"code": "NotFound"}})
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_fetcher(graph: FakeGraph, sleeps: list[float]):
    clients: list[httpx.Client] = []

    def _builder(
        max_attempts: int = 3,
        max_pages: int = 50,
        backoff_base: float = 0.5,
        interruptible: bool = False,
    ) -> PageFetcher:
        client = httpx.Client(transport=graph.transport())
        clients.append(client)
        exchange = ClientCredentialsExchange(
            TENANT, "client", "secret", authority_host=AUTHORITY, client=client
        )
        # Interruptible retries wait on the cancel event instead of recording delays.
        retry = RetryExecutor(max_attempts, backoff_base, sleep=None if interruptible else sleeps.append)
        return PageFetcher(TokenProvider(exchange), retry, client=client, max_pages=max_pages)

    yield _builder
    for client in clients:
        client.close()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    def _builder(**overrides: Any) -> AppConfig:
        payload: dict[str, Any] = {
            "identity": {
                "tenant_id": TENANT,
                "client_id": "client",
                "client_secret": "secret",
                "authority_host": AUTHORITY,
            },
            "api": {"base_url": BASE_URL, "parallel_subresources": True},
            "paths": {
                "input_path": str(tmp_path / "input.csv"),
                "output_dir": str(tmp_path / "output"),
                "failure_report": str(tmp_path / "failed.csv"),
            },
            "retry": {"max_attempts": 3, "backoff_base": 0.0, "jitter": 0.0, "max_delay": 0.0},
            "run": {"max_concurrency": 2},
        }
        for section, values in overrides.items():
            payload.setdefault(section, {}).update(values)
        return AppConfig.model_validate(payload)

    return _builder

"""Bearer credential acquisition with a single-flight refresh cache."""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable

import httpx
import structlog

from .errors import AuthError

DEFAULT_LIFETIME = timedelta(minutes=50)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Credential:
    """Opaque bearer token with its absolute expiry."""

    token: str
    expires_at: datetime

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return self.expires_at > now + margin

    def __repr__(self) -> str:
        return f"Credential(token='***', expires_at={self.expires_at.isoformat()})"


class ClientCredentialsExchange:
    """OAuth2 client-credentials grant against the Microsoft identity platform."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        authority_host: str = "https://login.microsoftonline.com",
        scope: str = "https://graph.microsoft.com/.default",
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        clock: Clock = utc_now,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.scope = scope
        self.token_url = f"{authority_host.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._clock = clock

    def __call__(self) -> Credential:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "scope": self.scope,
        }
        try:
            response = self._client.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            raise AuthError(f"Token request to {self.token_url} failed: {exc}") from exc
        if not response.is_success:
            raise AuthError(
                f"Identity endpoint returned {response.status_code}: {_error_detail(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Identity endpoint returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise AuthError("Identity endpoint returned an unexpected document")
        token = payload.get("access_token")
        if not token:
            raise AuthError("Identity endpoint response has no access_token")
        return Credential(token=str(token), expires_at=self._expiry(payload))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _expiry(self, payload: dict) -> datetime:
        now = self._clock()
        expires_in = payload.get("expires_in")
        if expires_in not in (None, ""):
            return now + timedelta(seconds=float(expires_in))
        expires_on = payload.get("expires_on")
        if expires_on not in (None, ""):
            return datetime.fromtimestamp(float(expires_on), tz=timezone.utc)
        return now + DEFAULT_LIFETIME


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)[:200]
    return str(body)[:200]


class TokenProvider:
    """Cache one credential and refresh it at most once per expiry window.

    The first caller to find the cache stale performs the exchange; callers
    arriving while it runs wait on the same future and receive its credential
    or its error. A failed refresh leaves the cache empty so the next call
    tries again.
    """

    def __init__(
        self,
        exchange: Callable[[], Credential],
        *,
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self._exchange = exchange
        self.refresh_margin = refresh_margin
        self._clock = clock
        self.logger = logger or structlog.get_logger("cdr_fetcher.auth")
        self._lock = Lock()
        self._credential: Credential | None = None
        self._inflight: Future[Credential] | None = None
        self.refresh_count = 0

    def get_token(self) -> Credential:
        with self._lock:
            cached = self._credential
            if cached is not None and cached.is_fresh(self._clock(), self.refresh_margin):
                return cached
            leader = self._inflight is None
            if leader:
                self._inflight = Future()
                self.refresh_count += 1
            pending = self._inflight
        if not leader:
            return pending.result()
        return self._refresh(pending)

    def invalidate(self) -> None:
        with self._lock:
            self._credential = None
        self.logger.info("token_invalidated")

    def _refresh(self, pending: Future[Credential]) -> Credential:
        try:
            credential = self._exchange()
            if not credential.is_fresh(self._clock(), self.refresh_margin):
                raise AuthError(
                    f"Identity endpoint issued a credential expiring at "
                    f"{credential.expires_at.isoformat()}, inside the refresh margin"
                )
        except Exception as exc:
            with self._lock:
                self._inflight = None
            self.logger.error("token_refresh_failed", error=str(exc))
            error = exc if isinstance(exc, AuthError) else AuthError(f"Token refresh failed: {exc}")
            pending.set_exception(error)
            if error is exc:
                raise
            raise error from exc
        with self._lock:
            self._credential = credential
            self._inflight = None
        pending.set_result(credential)
        self.logger.info("token_refreshed", expires_at=credential.expires_at.isoformat())
        return credential


__all__ = ["ClientCredentialsExchange", "Credential", "TokenProvider", "utc_now"]

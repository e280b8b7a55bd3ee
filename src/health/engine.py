"""App health engine: concurrent reachability probes for registered apps.

Each app gets one probe: HEAD first, GET when HEAD fails or is not supported.
Every attempt follows at most ``max_redirects`` redirect hops and is bounded
by its own timeout. Probes never raise; failures become ``down`` results.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 7_000
MAX_REDIRECTS = 3
USER_AGENT = "TablooHealth/1.0 (+https://tabloo)"

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
# HEAD answered with one of these means "try GET instead"
HEAD_UNSUPPORTED_STATUSES = frozenset({405, 501})


# ── Models ───────────────────────────────────────────────────────────────────


class Status(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class AppRef:
    """The slice of a registered app that a probe needs."""

    id: int
    name: str
    url: str
    tag: str | None = None
    section: str | None = None


@dataclass(frozen=True)
class ProbeOutcome:
    status_code: int


@dataclass
class HealthResult:
    """Outcome of probing one app."""

    id: int
    name: str
    url: str
    tag: str | None
    section: str | None
    status: Status
    status_code: int | None
    latency_ms: int
    error: str | None = None

    @classmethod
    def for_app(cls, app: AppRef, **kwargs: Any) -> "HealthResult":
        return cls(
            id=app.id, name=app.name, url=app.url, tag=app.tag, section=app.section,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "tag": self.tag,
            "section": self.section,
            "status": self.status.value,
            "statusCode": self.status_code,
            "latencyMs": self.latency_ms,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class HealthReport:
    checked_at: str
    apps: list[HealthResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkedAt": self.checked_at,
            "apps": [r.to_dict() for r in self.apps],
        }


class AppSource(Protocol):
    """Anything that can enumerate the apps to probe (name ascending)."""

    def list_for_health(self) -> list[AppRef]: ...


class ProbeTimeoutError(Exception):
    """Raised when a single HTTP attempt exceeds its timeout."""


def classify(status_code: int) -> Status:
    return Status.UP if 200 <= status_code < 400 else Status.DOWN


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error_message(error: Exception) -> str:
    return str(error) or type(error).__name__


# ── Checker ──────────────────────────────────────────────────────────────────


class HealthChecker:
    """Probes apps concurrently and assembles a :class:`HealthReport`.

    ``transport`` is handed to ``httpx.AsyncClient`` as-is; tests pass an
    ``httpx.MockTransport`` to stand in for the probed services.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_redirects: int = MAX_REDIRECTS,
        user_agent: str = USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self._transport = transport

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            # no pool cap: every probe opens its connection immediately
            limits=httpx.Limits(max_connections=None, max_keepalive_connections=None),
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        )

    async def check_registry(self, registry: AppSource) -> HealthReport:
        """Snapshot the registry, then probe every app in it.

        Registry errors propagate before any request is sent.
        """
        checked_at = _now_iso()
        loop = asyncio.get_running_loop()
        apps = await loop.run_in_executor(None, registry.list_for_health)
        return await self.check_health(apps, checked_at=checked_at)

    async def check_health(
        self, apps: Sequence[AppRef], checked_at: str | None = None,
    ) -> HealthReport:
        """Probe all apps at once and return results in input order."""
        checked_at = checked_at or _now_iso()
        if not apps:
            return HealthReport(checked_at=checked_at, apps=[])

        async with self._client() as client:
            results = await asyncio.gather(*(self.probe_app(client, app) for app in apps))

        down = sum(1 for r in results if r.status == Status.DOWN)
        logger.info("Health check finished: %d apps, %d down", len(results), down)
        return HealthReport(checked_at=checked_at, apps=list(results))

    async def probe_app(self, client: httpx.AsyncClient, app: AppRef) -> HealthResult:
        """HEAD the app's URL, falling back to GET; never raises."""
        t0 = time.perf_counter()
        last_error: Exception | None = None

        for method in ("HEAD", "GET"):
            try:
                outcome = await self.perform_request(client, app.url, method)
            except Exception as e:
                # also covers non-httpx failures such as OverflowError for a bad port
                last_error = e
                logger.debug("%s %s failed: %s", method, app.url, _error_message(e))
                continue

            if method == "HEAD" and outcome.status_code in HEAD_UNSUPPORTED_STATUSES:
                continue

            return HealthResult.for_app(
                app,
                status=classify(outcome.status_code),
                status_code=outcome.status_code,
                latency_ms=_elapsed_ms(t0),
            )

        return HealthResult.for_app(
            app,
            status=Status.DOWN,
            status_code=None,
            latency_ms=_elapsed_ms(t0),
            error=_error_message(last_error) if last_error else "Request failed",
        )

    async def perform_request(
        self,
        client: httpx.AsyncClient,
        url: str,
        method: str = "HEAD",
        redirect_depth: int = 0,
    ) -> ProbeOutcome:
        """Send one request, following up to ``max_redirects`` hops.

        The response body is never read. An exhausted redirect budget returns
        the last redirect status instead of failing.
        """
        target = httpx.URL(url)
        if target.scheme not in ("http", "https") or not target.host:
            raise httpx.InvalidURL(f"Invalid URL: {url}")

        try:
            status_code, location = await asyncio.wait_for(
                self._send(client, url, method), timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProbeTimeoutError("Request timed out") from None

        if (
            location
            and status_code in REDIRECT_STATUSES
            and redirect_depth < self.max_redirects
        ):
            next_url = str(target.join(location))
            logger.debug("%s %s -> %d %s", method, url, status_code, next_url)
            return await self.perform_request(client, next_url, method, redirect_depth + 1)

        return ProbeOutcome(status_code=status_code)

    async def _send(
        self, client: httpx.AsyncClient, url: str, method: str,
    ) -> tuple[int, str | None]:
        request = client.build_request(method, url)
        response = await client.send(request, stream=True)
        try:
            return response.status_code, response.headers.get("location")
        finally:
            await response.aclose()


def _elapsed_ms(t0: float) -> int:
    return max(0, int((time.perf_counter() - t0) * 1000))

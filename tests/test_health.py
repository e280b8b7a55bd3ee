"""Tests for the app health engine and poller."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from unittest.mock import MagicMock

import httpx
import pytest

from src.health.engine import (
    USER_AGENT,
    AppRef,
    HealthChecker,
    HealthReport,
    HealthResult,
    Status,
    classify,
)
from src.health.scheduler import HealthScheduler


def _apps(*urls: str) -> list[AppRef]:
    return [
        AppRef(id=i + 1, name=f"app{i + 1}", url=url, tag="t", section="s")
        for i, url in enumerate(urls)
    ]


def _check(handler, apps: list[AppRef], timeout_ms: int = 500) -> HealthReport:
    checker = HealthChecker(timeout_ms=timeout_ms, transport=httpx.MockTransport(handler))
    return asyncio.run(checker.check_health(apps))


class Recorder:
    """Mock transport handler that logs requests and delegates to ``respond``."""

    def __init__(self, respond) -> None:
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.respond(request)

    @property
    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


# ── Classification / serialization ───────────────────────────────────────────


class TestClassify:
    @pytest.mark.parametrize("code", [200, 204, 301, 399])
    def test_up(self, code: int) -> None:
        assert classify(code) == Status.UP

    @pytest.mark.parametrize("code", [199, 400, 404, 500, 503])
    def test_down(self, code: int) -> None:
        assert classify(code) == Status.DOWN


class TestSerialization:
    def test_result_uses_camel_case_and_omits_empty_error(self) -> None:
        app = _apps("http://nas.lan")[0]
        result = HealthResult.for_app(app, status=Status.UP, status_code=200, latency_ms=12)
        d = result.to_dict()
        assert d == {
            "id": 1, "name": "app1", "url": "http://nas.lan", "tag": "t", "section": "s",
            "status": "up", "statusCode": 200, "latencyMs": 12,
        }

    def test_result_includes_error(self) -> None:
        app = _apps("http://nas.lan")[0]
        result = HealthResult.for_app(
            app, status=Status.DOWN, status_code=None, latency_ms=5, error="boom",
        )
        assert result.to_dict()["error"] == "boom"
        assert result.to_dict()["statusCode"] is None

    def test_report(self) -> None:
        report = HealthReport(checked_at="2025-01-01T00:00:00Z", apps=[])
        assert report.to_dict() == {"checkedAt": "2025-01-01T00:00:00Z", "apps": []}


# ── Probes ───────────────────────────────────────────────────────────────────


class TestProbe:
    def test_head_ok(self) -> None:
        rec = Recorder(lambda r: httpx.Response(200))
        report = _check(rec, _apps("http://nas.lan/"))
        [result] = report.apps
        assert result.status == Status.UP
        assert result.status_code == 200
        assert result.error is None
        assert result.latency_ms >= 0
        assert rec.methods == ["HEAD"]

    def test_head_not_allowed_falls_back_to_get(self) -> None:
        rec = Recorder(lambda r: httpx.Response(405 if r.method == "HEAD" else 200))
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status == Status.UP
        assert result.status_code == 200
        assert rec.methods == ["HEAD", "GET"]

    def test_head_not_implemented_uses_get_result(self) -> None:
        rec = Recorder(lambda r: httpx.Response(501 if r.method == "HEAD" else 503))
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status == Status.DOWN
        assert result.status_code == 503
        assert result.error is None

    def test_http_error_status_is_down_without_get(self) -> None:
        rec = Recorder(lambda r: httpx.Response(500))
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status == Status.DOWN
        assert result.status_code == 500
        assert result.error is None
        assert rec.methods == ["HEAD"]

    def test_head_transport_error_then_get_ok(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                raise httpx.RemoteProtocolError("Server disconnected", request=request)
            return httpx.Response(200)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status == Status.UP
        assert result.status_code == 200
        assert rec.methods == ["HEAD", "GET"]

    def test_connection_refused_on_both(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status == Status.DOWN
        assert result.status_code is None
        assert result.error == "Connection refused"
        assert rec.methods == ["HEAD", "GET"]

    def test_timeout_on_both(self) -> None:
        async def respond(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://slow.lan/"), timeout_ms=50).apps
        assert result.status == Status.DOWN
        assert result.status_code is None
        assert result.error == "Request timed out"
        assert rec.methods == ["HEAD", "GET"]
        assert result.latency_ms < 5000

    def test_invalid_url_is_down(self) -> None:
        rec = Recorder(lambda r: httpx.Response(200))
        [result] = _check(rec, _apps("not a url")).apps
        assert result.status == Status.DOWN
        assert result.status_code is None
        assert result.error

    def test_unexpected_errors_do_not_fail_the_report(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.port == 99999:
                raise OverflowError("connect(): port must be 0-65535.")
            if request.url.host == "xn--":
                raise UnicodeError("Malformed A-label")
            return httpx.Response(200)

        apps = _apps("http://localhost:99999/", "http://xn--/", "http://nas.lan/")
        bad_port, bad_host, healthy = _check(Recorder(respond), apps).apps
        assert bad_port.status == Status.DOWN
        assert bad_port.status_code is None
        assert bad_port.error
        assert bad_host.status == Status.DOWN
        assert bad_host.error
        assert healthy.status == Status.UP

    def test_user_agent_header(self) -> None:
        rec = Recorder(lambda r: httpx.Response(200))
        _check(rec, _apps("http://nas.lan/"))
        assert rec.requests[0].headers["user-agent"] == USER_AGENT


# ── Redirects ────────────────────────────────────────────────────────────────


class TestRedirects:
    def test_redirect_to_not_found(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"Location": "http://nas.lan/new"})
            return httpx.Response(404)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://nas.lan/old")).apps
        assert result.status == Status.DOWN
        assert result.status_code == 404
        assert result.error is None
        assert rec.paths == ["/old", "/new"]

    def test_redirect_budget_exhausted_returns_last_status(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            n = int(request.url.path.lstrip("/r"))
            return httpx.Response(302, headers={"Location": f"/r{n + 1}"})

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://loop.lan/r0")).apps
        # initial request + 3 followed hops; the 4th 302 is returned as-is
        assert rec.paths == ["/r0", "/r1", "/r2", "/r3"]
        assert result.status_code == 302
        assert result.status == Status.UP
        assert result.error is None

    def test_relative_location_is_resolved(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/app/login":
                return httpx.Response(307, headers={"Location": "home"})
            return httpx.Response(200)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://nas.lan/app/login")).apps
        assert result.status_code == 200
        assert [str(r.url) for r in rec.requests] == [
            "http://nas.lan/app/login",
            "http://nas.lan/app/home",
        ]

    def test_redirect_keeps_method(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/":
                return httpx.Response(303, headers={"Location": "/admin"})
            return httpx.Response(405 if request.method == "HEAD" else 200)

        rec = Recorder(respond)
        [result] = _check(rec, _apps("http://pihole.lan/")).apps
        assert result.status_code == 200
        assert rec.methods == ["HEAD", "HEAD", "GET", "GET"]

    def test_redirect_without_location_is_not_followed(self) -> None:
        rec = Recorder(lambda r: httpx.Response(302))
        [result] = _check(rec, _apps("http://nas.lan/")).apps
        assert result.status_code == 302
        assert len(rec.requests) == 1


# ── Report assembly ──────────────────────────────────────────────────────────


class TestCheckHealth:
    def test_empty_list_makes_no_requests(self) -> None:
        rec = Recorder(lambda r: httpx.Response(200))
        report = _check(rec, [])
        assert report.apps == []
        assert report.checked_at
        assert rec.requests == []

    def test_results_keep_input_order(self) -> None:
        delays = {"a.lan": 0.15, "b.lan": 0.0, "c.lan": 0.05}

        async def respond(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(delays[request.url.host])
            return httpx.Response(200 if request.url.host != "b.lan" else 404)

        apps = _apps("http://a.lan/", "http://b.lan/", "http://c.lan/")
        report = _check(respond, apps)
        assert [r.id for r in report.apps] == [1, 2, 3]
        assert [r.url for r in report.apps] == [a.url for a in apps]
        assert [r.status for r in report.apps] == [Status.UP, Status.DOWN, Status.UP]

    def test_hanging_app_does_not_block_others(self) -> None:
        async def respond(request: httpx.Request) -> httpx.Response:
            if request.url.host == "hang.lan":
                await asyncio.sleep(30)
            return httpx.Response(200)

        apps = _apps("http://hang.lan/", "http://fast1.lan/", "http://fast2.lan/")
        report = _check(respond, apps, timeout_ms=200)
        hang, fast1, fast2 = report.apps
        assert hang.status == Status.DOWN
        assert hang.error == "Request timed out"
        assert fast1.status == Status.UP and fast1.latency_ms < 200
        assert fast2.status == Status.UP and fast2.latency_ms < 200

    def test_many_hanging_apps_do_not_delay_a_healthy_one(self, monkeypatch) -> None:
        for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
            monkeypatch.delenv(var, raising=False)
        methods: list[str] = []

        async def run() -> HealthReport:
            release = asyncio.Event()

            async def hang(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
                await release.wait()
                writer.close()

            async def ok(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
                head = await reader.readuntil(b"\r\n\r\n")
                methods.append(head.split(b" ", 1)[0].decode())
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
                await writer.drain()
                writer.close()

            hang_server = await asyncio.start_server(hang, "127.0.0.1", 0)
            ok_server = await asyncio.start_server(ok, "127.0.0.1", 0)
            hang_port = hang_server.sockets[0].getsockname()[1]
            ok_port = ok_server.sockets[0].getsockname()[1]

            urls = [f"http://127.0.0.1:{hang_port}/{i}" for i in range(120)]
            urls.append(f"http://127.0.0.1:{ok_port}/")
            checker = HealthChecker(timeout_ms=800)
            try:
                return await checker.check_health(_apps(*urls))
            finally:
                release.set()
                for server in (hang_server, ok_server):
                    server.close()
                    await server.wait_closed()

        report = asyncio.run(run())
        *hung, healthy = report.apps
        assert all(r.status == Status.DOWN for r in hung)
        assert healthy.status == Status.UP
        assert healthy.status_code == 200
        assert healthy.latency_ms < 800
        assert methods == ["HEAD"]

    def test_registry_is_read_off_the_event_loop(self) -> None:
        seen: list[str] = []

        def list_for_health() -> list[AppRef]:
            seen.append(threading.current_thread().name)
            return []

        registry = MagicMock()
        registry.list_for_health.side_effect = list_for_health
        checker = HealthChecker(transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        asyncio.run(checker.check_registry(registry))
        assert seen and seen[0] != threading.main_thread().name

    def test_copies_app_fields(self) -> None:
        app = AppRef(id=7, name="Immich", url="http://immich.lan/", tag="Media", section=None)
        [result] = _check(lambda r: httpx.Response(200), [app]).apps
        assert (result.id, result.name, result.url, result.tag, result.section) == (
            7, "Immich", "http://immich.lan/", "Media", None,
        )

    def test_registry_failure_propagates_before_any_request(self) -> None:
        rec = Recorder(lambda r: httpx.Response(200))
        registry = MagicMock()
        registry.list_for_health.side_effect = sqlite3.OperationalError("database is locked")
        checker = HealthChecker(transport=httpx.MockTransport(rec))

        with pytest.raises(sqlite3.OperationalError):
            asyncio.run(checker.check_registry(registry))
        assert rec.requests == []

    def test_check_registry_uses_registry_order(self) -> None:
        registry = MagicMock()
        registry.list_for_health.return_value = _apps("http://b.lan/", "http://a.lan/")
        checker = HealthChecker(transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        report = asyncio.run(checker.check_registry(registry))
        assert [r.url for r in report.apps] == ["http://b.lan/", "http://a.lan/"]


# ── Poller ───────────────────────────────────────────────────────────────────


class TestHealthScheduler:
    def _scheduler(self, settings_store=None) -> HealthScheduler:
        registry = MagicMock()
        registry.list_for_health.return_value = _apps("http://nas.lan/")
        checker = HealthChecker(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        return HealthScheduler(registry, checker, settings_store=settings_store)

    def test_run_now_keeps_latest(self) -> None:
        scheduler = self._scheduler()
        assert scheduler.latest is None
        report = asyncio.run(scheduler.run_now())
        assert scheduler.latest is report
        assert report.apps[0].status == Status.UP

    def test_interval_from_settings(self, settings_store) -> None:
        settings_store.update({"appHealthCheckInterval": 30000})
        assert self._scheduler(settings_store).interval_seconds() == 30.0

    def test_interval_default_when_invalid(self, settings_store) -> None:
        settings_store.update({"appHealthCheckInterval": "soon"})
        assert self._scheduler(settings_store).interval_seconds() == 60.0

    def test_interval_has_floor(self, settings_store) -> None:
        settings_store.update({"appHealthCheckInterval": 10})
        assert self._scheduler(settings_store).interval_seconds() == 5.0

    def test_start_and_stop(self) -> None:
        scheduler = self._scheduler()

        async def cycle() -> None:
            await scheduler.start()
            assert scheduler.running
            for _ in range(50):
                if scheduler.latest is not None:
                    break
                await asyncio.sleep(0.01)
            await scheduler.stop()

        asyncio.run(cycle())
        assert not scheduler.running
        assert scheduler.latest is not None

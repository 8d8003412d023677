"""Tests for the update cycle and updater lifecycle."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

import httpx
import pytest

from ddns_updater.config import Config
from ddns_updater.exceptions import (
    ClientConfigError,
    ConfigurationError,
    ProviderLoadError,
    PushError,
)
from ddns_updater.models import AddressFamily
from ddns_updater.network import AddressClient
from ddns_updater.providers import CompiledProvider
from ddns_updater.updater import Updater, UpdaterState

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def make_provider(name: str, *, ipv4: bool = True, ipv6: bool = True) -> CompiledProvider:
    lines = [
        "[meta]",
        f'host_url = "https://{name}.example.com/"',
        'response = "good|nochg"',
    ]
    if ipv4:
        lines += ["[ipv4]", 'path = "update?ip={{.ipv4}}&token={{.token}}"']
    if ipv6:
        lines += ["[ipv6]", 'path = "update?ip={{.ipv6}}&token={{.token}}"']
    lines += ["[args]", 'token = "secret-token"']
    return CompiledProvider.load("\n".join(lines), name=name)


def address_client(
    family: AddressFamily,
    handler: Callable[[httpx.Request], object],
) -> AddressClient:
    return AddressClient(
        family,
        httpx.URL(f"https://{family.value}.example.com/"),
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),  # type: ignore[arg-type]
    )


def fixed_address(ip: str) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=ip)

    return handler


class PushRecorder:
    """Mock push endpoint answering per provider host."""

    def __init__(self, responses: dict[str, str] | None = None) -> None:
        self.responses = responses or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        provider = request.url.host.split(".", 1)[0]
        return httpx.Response(200, text=self.responses.get(provider, "good"))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class TestUpdaterInit:
    """Tests for Updater construction."""

    @pytest.mark.asyncio
    async def test_no_address_client(self):
        with pytest.raises(ConfigurationError, match="IPv4/IPv6 are all disabled"):
            Updater([make_provider("a")], httpx.AsyncClient())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("period", [0, -1.0])
    async def test_invalid_period(self, period: float):
        with pytest.raises(ConfigurationError, match="period must be positive"):
            Updater(
                [make_provider("a")],
                httpx.AsyncClient(),
                ipv4_client=address_client(AddressFamily.IPV4, fixed_address("192.0.2.1")),
                period=period,
            )

    @pytest.mark.asyncio
    async def test_no_providers_allowed(self):
        updater = Updater(
            [],
            httpx.AsyncClient(),
            ipv6_client=address_client(AddressFamily.IPV6, fixed_address("2001:db8::1")),
        )
        async with updater:
            report = await updater.update()
        assert report.addresses == {AddressFamily.IPV6: "2001:db8::1"}
        assert report.outcomes == []
        assert report.ok

    @pytest.mark.asyncio
    async def test_families(self):
        updater = Updater(
            [],
            httpx.AsyncClient(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("192.0.2.1")),
        )
        async with updater:
            assert updater.families == (AddressFamily.IPV4,)
            assert updater.state is UpdaterState.IDLE


class TestUpdatePass:
    """Tests for a single update pass."""

    @pytest.mark.asyncio
    async def test_pushes_every_provider_and_family(self):
        recorder = PushRecorder()
        updater = Updater(
            [make_provider("a"), make_provider("b")],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
            ipv6_client=address_client(AddressFamily.IPV6, fixed_address("2001:db8::7")),
        )
        async with updater:
            report = await updater.update()

        assert report.ok
        assert len(report.succeeded()) == 4
        assert {(o.provider, o.family) for o in report.outcomes} == {
            ("a", AddressFamily.IPV4),
            ("a", AddressFamily.IPV6),
            ("b", AddressFamily.IPV4),
            ("b", AddressFamily.IPV6),
        }
        pushed = {(r.url.host, r.url.params["ip"]) for r in recorder.requests}
        assert pushed == {
            ("a.example.com", "203.0.113.7"),
            ("a.example.com", "2001:db8::7"),
            ("b.example.com", "203.0.113.7"),
            ("b.example.com", "2001:db8::7"),
        }

    @pytest.mark.asyncio
    async def test_one_provider_failing_does_not_block_others(self):
        recorder = PushRecorder({"a": "badauth"})
        updater = Updater(
            [make_provider("a"), make_provider("b")],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        async with updater:
            report = await updater.update()

        assert not report.ok
        [failed] = report.for_provider("a")
        assert failed.status == "error"
        assert failed.response == "badauth"
        assert "unexpected response" in failed.message
        [succeeded] = report.for_provider("b")
        assert succeeded.status == "success"
        assert succeeded.response == "good"

    @pytest.mark.asyncio
    async def test_unreachable_provider_does_not_block_others(self):
        sent: list[str] = []

        async def push(request: httpx.Request) -> httpx.Response:
            if request.url.host == "a.example.com":
                msg = "connection refused"
                raise httpx.ConnectError(msg, request=request)
            sent.append(request.url.host)
            return httpx.Response(200, text="good")

        updater = Updater(
            [make_provider("a"), make_provider("b")],
            httpx.AsyncClient(transport=httpx.MockTransport(push)),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
            ipv6_client=address_client(AddressFamily.IPV6, fixed_address("2001:db8::7")),
        )
        async with updater:
            report = await updater.update()

        assert sent == ["b.example.com", "b.example.com"]
        assert {o.status for o in report.for_provider("a")} == {"error"}
        assert {o.status for o in report.for_provider("b")} == {"success"}
        assert len(report.failed()) == 2

    @pytest.mark.asyncio
    async def test_ipv4_lookup_failure_does_not_block_ipv6(self):
        def broken(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        recorder = PushRecorder()
        updater = Updater(
            [make_provider("a")],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, broken),
            ipv6_client=address_client(AddressFamily.IPV6, fixed_address("2001:db8::7")),
        )
        async with updater:
            report = await updater.update()

        assert report.addresses == {AddressFamily.IPV4: None, AddressFamily.IPV6: "2001:db8::7"}
        assert [(o.family, o.status) for o in report.outcomes] == [
            (AddressFamily.IPV6, "success"),
        ]
        assert len(recorder.requests) == 1
        assert not report.ok

    @pytest.mark.asyncio
    async def test_no_address_skips_providers(self):
        recorder = PushRecorder()
        updater = Updater(
            [make_provider("a")],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("not an ip")),
        )
        async with updater:
            report = await updater.update()

        assert report.addresses == {AddressFamily.IPV4: None}
        assert report.outcomes == []
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_unsupported_family_skipped(self):
        recorder = PushRecorder()
        updater = Updater(
            [make_provider("v4only", ipv6=False)],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
            ipv6_client=address_client(AddressFamily.IPV6, fixed_address("2001:db8::7")),
        )
        async with updater:
            report = await updater.update()

        statuses = {o.family: o.status for o in report.outcomes}
        assert statuses == {AddressFamily.IPV4: "success", AddressFamily.IPV6: "skipped"}
        assert report.ok
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_push_connect_error(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            msg = "connection refused"
            raise httpx.ConnectError(msg, request=request)

        updater = Updater(
            [make_provider("a")],
            httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        async with updater:
            report = await updater.update()

        [outcome] = report.outcomes
        assert outcome.status == "error"
        assert "connection refused" in outcome.message
        assert outcome.response is None

    @pytest.mark.asyncio
    async def test_push_unsupported_family_raises(self):
        updater = Updater(
            [],
            PushRecorder().client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        async with updater:
            with pytest.raises(PushError, match="IPv6 is not supported"):
                await updater.push(make_provider("a", ipv6=False), AddressFamily.IPV6, "2001:db8::1")

    @pytest.mark.asyncio
    async def test_push_uses_client_defaults(self):
        recorder = PushRecorder()
        push_client = httpx.AsyncClient(
            transport=httpx.MockTransport(recorder),
            headers={"User-Agent": "ddns-updater-test"},
        )
        updater = Updater(
            [],
            push_client,
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        async with updater:
            body = await updater.push(make_provider("a"), AddressFamily.IPV4, "203.0.113.7")

        assert body == "good"
        assert recorder.requests[0].headers["User-Agent"] == "ddns-updater-test"
        assert recorder.requests[0].url.params["token"] == "secret-token"

    @pytest.mark.asyncio
    async def test_failure_logged(self, caplog: pytest.LogCaptureFixture):
        recorder = PushRecorder({"a": "badauth"})
        updater = Updater(
            [make_provider("a")],
            recorder.client(),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        package_logger = logging.getLogger("ddns_updater")
        package_logger.addHandler(caplog.handler)
        try:
            async with updater:
                await updater.update()
        finally:
            package_logger.removeHandler(caplog.handler)
        assert "[a] Failed to push IPv4 address: unexpected response: badauth" in caplog.text

    @pytest.mark.asyncio
    async def test_providers_pushed_concurrently(self):
        pushed: set[tuple[str, str]] = set()
        in_flight = 0
        peak = 0

        async def slow_push(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.3)
            in_flight -= 1
            pushed.add((request.url.host, request.url.params["ip"]))
            return httpx.Response(200, text="good")

        updater = Updater(
            [make_provider(name, ipv6=False) for name in ("a", "b", "c")],
            httpx.AsyncClient(transport=httpx.MockTransport(slow_push)),
            ipv4_client=address_client(AddressFamily.IPV4, fixed_address("203.0.113.7")),
        )
        async with updater:
            started = time.monotonic()
            report = await updater.update()
            elapsed = time.monotonic() - started

        assert report.ok
        assert pushed == {
            ("a.example.com", "203.0.113.7"),
            ("b.example.com", "203.0.113.7"),
            ("c.example.com", "203.0.113.7"),
        }
        assert peak == 3
        # Three sequential pushes would take at least 0.9s
        assert elapsed < 0.6


class TestUpdaterLifecycle:
    """Tests for run/stop scheduling."""

    @staticmethod
    def counting_updater(counter: list[int], period: float) -> Updater:
        def handler(request: httpx.Request) -> httpx.Response:
            counter.append(1)
            return httpx.Response(200, text="203.0.113.7")

        return Updater(
            [make_provider("a")],
            PushRecorder().client(),
            ipv4_client=address_client(AddressFamily.IPV4, handler),
            period=period,
        )

    @pytest.mark.asyncio
    async def test_run_twice_schedules_once(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=0.1)
        async with updater:
            updater.run()
            updater.run()
            assert updater.state is UpdaterState.SCHEDULED
            await asyncio.sleep(0.35)
        # Three ticks with a single scheduler; a second scheduler would double that
        assert 1 <= len(counter) <= 4

    @pytest.mark.asyncio
    async def test_no_pass_after_stop(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=0.05)
        async with updater:
            updater.run()
            await asyncio.sleep(0.2)
            await updater.stop()
            assert updater.state is UpdaterState.STOPPED
            stopped_at = len(counter)
            await asyncio.sleep(0.2)
            assert len(counter) == stopped_at
        assert stopped_at >= 1

    @pytest.mark.asyncio
    async def test_run_after_stop_does_nothing(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=0.05)
        async with updater:
            await updater.stop()
            updater.run()
            assert updater.state is UpdaterState.STOPPED
            await asyncio.sleep(0.15)
        assert counter == []

    @pytest.mark.asyncio
    async def test_stop_idempotent(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=0.05)
        async with updater:
            updater.run()
            await asyncio.gather(updater.stop(), updater.stop())
            await updater.stop()
            assert updater.state is UpdaterState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_before_run(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=0.05)
        async with updater:
            await updater.stop()
            assert updater.state is UpdaterState.STOPPED

    @pytest.mark.asyncio
    async def test_update_without_run(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=60)
        async with updater:
            report = await updater.update()
            assert updater.state is UpdaterState.IDLE
        assert report.ok
        assert len(counter) == 1

    @pytest.mark.asyncio
    async def test_update_after_stop(self):
        counter: list[int] = []
        updater = self.counting_updater(counter, period=60)
        async with updater:
            await updater.stop()
            report = await updater.update()
        assert report.ok
        assert len(counter) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_pass(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(request: httpx.Request) -> httpx.Response:
            started.set()
            await release.wait()
            return httpx.Response(200, text="203.0.113.7")

        updater = Updater(
            [make_provider("a")],
            PushRecorder().client(),
            ipv4_client=address_client(AddressFamily.IPV4, slow),
            period=60,
        )
        async with updater:
            in_flight = asyncio.create_task(updater.update())
            await asyncio.wait_for(started.wait(), timeout=1)
            await asyncio.wait_for(updater.stop(), timeout=1)
            with pytest.raises(asyncio.CancelledError):
                await in_flight

    @pytest.mark.asyncio
    async def test_aclose_cancels_pass_started_after_stop(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(request: httpx.Request) -> httpx.Response:
            started.set()
            await release.wait()
            return httpx.Response(200, text="203.0.113.7")

        updater = Updater(
            [make_provider("a")],
            PushRecorder().client(),
            ipv4_client=address_client(AddressFamily.IPV4, slow),
            period=60,
        )
        await updater.stop()
        late = asyncio.create_task(updater.update())
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.wait_for(updater.aclose(), timeout=1)
        with pytest.raises(asyncio.CancelledError):
            await late


class TestUpdaterFromConfig:
    """Tests for Updater.from_config."""

    PROVIDER = '[meta]\nhost_url = "https://dyn.example.com/"\n[ipv4]\npath = "u?ip={{.ipv4}}"\n'

    @pytest.mark.asyncio
    async def test_build(self, tmp_path: Path):
        (tmp_path / "dyn.toml").write_text(self.PROVIDER, encoding="utf-8")
        config = Config.model_validate(
            {
                "period": "5m",
                "public_ipv4": {"enable": True, "url": "https://ip4.example.com/"},
                "provider": {"dir": str(tmp_path), "item": ["dyn.toml"]},
            },
        )
        updater = Updater.from_config(config)
        async with updater:
            assert updater.period == 300.0
            assert updater.families == (AddressFamily.IPV4,)
            assert [p.name for p in updater.providers] == ["dyn.toml"]

    def test_missing_provider_file(self, tmp_path: Path):
        config = Config.model_validate(
            {
                "public_ipv4": {"enable": True, "url": "https://ip4.example.com/"},
                "provider": {"dir": str(tmp_path), "item": ["missing.toml"]},
            },
        )
        with pytest.raises(ProviderLoadError):
            Updater.from_config(config)

    def test_invalid_local_address(self, tmp_path: Path):
        config = Config.model_validate(
            {
                "public_ipv6": {
                    "enable": True,
                    "url": "https://ip6.example.com/",
                    "laddr": "[::1]:8080",
                },
                "provider": {"dir": str(tmp_path)},
            },
        )
        with pytest.raises(ClientConfigError, match="must not set a port"):
            Updater.from_config(config)

    def test_invalid_push_proxy(self, tmp_path: Path):
        config = Config.model_validate(
            {
                "public_ipv4": {"enable": True, "url": "https://ip4.example.com/"},
                "provider": {"dir": str(tmp_path), "proxy": "ftp://proxy.example.com"},
            },
        )
        with pytest.raises(ClientConfigError, match="invalid proxy url"):
            Updater.from_config(config)

    @pytest.mark.asyncio
    async def test_socks_proxy(self, tmp_path: Path):
        (tmp_path / "dyn.toml").write_text(self.PROVIDER, encoding="utf-8")
        config = Config.model_validate(
            {
                "public_ipv4": {
                    "enable": True,
                    "url": "https://ip4.example.com/",
                    "proxy": "socks5://127.0.0.1:1080",
                },
                "provider": {
                    "dir": str(tmp_path),
                    "item": ["dyn.toml"],
                    "proxy": "socks5://127.0.0.1:1080",
                },
            },
        )
        updater = Updater.from_config(config)
        async with updater:
            assert updater.families == (AddressFamily.IPV4,)
            assert [p.name for p in updater.providers] == ["dyn.toml"]

"""
Update cycle and lifecycle management for DDNS Updater.

An `Updater` looks up the public IPv4/IPv6 addresses, then pushes them to every
configured provider concurrently. `run()` schedules a pass every period on a
background task, `update()` runs a single pass on demand, and `stop()` cancels
the schedule and all in-flight passes and waits for them to exit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum
from typing import TYPE_CHECKING

import httpx

from ddns_updater.config import DEFAULT_PERIOD
from ddns_updater.exceptions import (
    AddressLookupError,
    ConfigurationError,
    PushError,
    TemplateRenderError,
)
from ddns_updater.models import AddressFamily, PassReport, PushOutcome
from ddns_updater.network import build_address_client, build_push_client
from ddns_updater.providers.provider import load_providers

if TYPE_CHECKING:
    from collections.abc import Iterable
    from types import TracebackType
    from typing import Self

    from ddns_updater.config import Config
    from ddns_updater.network import AddressClient
    from ddns_updater.providers.provider import CompiledProvider


logger = logging.getLogger(__name__)


class UpdaterState(StrEnum):
    """
    Lifecycle states of an updater.

    Transitions are linear: idle -> scheduled -> stopped (stop() may also go
    straight from idle to stopped).
    """

    IDLE = "idle"
    SCHEDULED = "scheduled"
    STOPPED = "stopped"


class Updater:
    """
    DDNS updater.

    Looks up the public IPv4/IPv6 addresses from public address services and
    reports them to the configured DDNS providers.

    Attributes
    ----------
    providers : tuple[CompiledProvider, ...]
        Providers, pushed in this order.
    period : float
        Seconds between scheduled passes.
    """

    def __init__(
        self,
        providers: Iterable[CompiledProvider],
        push_client: httpx.AsyncClient,
        *,
        ipv4_client: AddressClient | None = None,
        ipv6_client: AddressClient | None = None,
        period: float = DEFAULT_PERIOD,
    ) -> None:
        """
        Initialize an updater from already-built components.

        Parameters
        ----------
        providers : Iterable[CompiledProvider]
            Compiled providers.
        push_client : httpx.AsyncClient
            Client shared by every push.
        ipv4_client : AddressClient | None, optional
            Public IPv4 lookup client; None disables IPv4.
        ipv6_client : AddressClient | None, optional
            Public IPv6 lookup client; None disables IPv6.
        period : float, optional
            Seconds between scheduled passes.

        Raises
        ------
        ConfigurationError
            If neither lookup client is given or the period is not positive.
        """
        if ipv4_client is None and ipv6_client is None:
            msg = "IPv4/IPv6 are all disabled"
            raise ConfigurationError(msg)
        if period <= 0:
            msg = f"update period must be positive, got {period}"
            raise ConfigurationError(msg)

        self.providers = tuple(providers)
        self.period = period
        self._push_client = push_client
        self._address_clients: dict[AddressFamily, AddressClient] = {}
        if ipv4_client is not None:
            self._address_clients[AddressFamily.IPV4] = ipv4_client
        if ipv6_client is not None:
            self._address_clients[AddressFamily.IPV6] = ipv6_client

        self._state = UpdaterState.IDLE
        self._scheduler: asyncio.Task[None] | None = None
        self._passes: set[asyncio.Task[PassReport]] = set()
        self._drained = asyncio.Event()

        if not self.providers:
            logger.warning("No provider configured, addresses will only be looked up.")

    @classmethod
    def from_config(cls, config: Config) -> Self:
        """
        Build an updater from validated configuration.

        Providers are loaded and every client is built up front, so a bad
        provider file, URL, local address or proxy fails here rather than
        during a pass. Clients open no connection until first used.

        Parameters
        ----------
        config : Config
            Validated configuration.

        Returns
        -------
        Self
            The updater, in the idle state.

        Raises
        ------
        ConfigurationError
            If a provider fails to load or a client cannot be built.
        """
        timeout = config.timeout_seconds
        providers = load_providers(config.provider.dir_as_path, config.provider.item)

        address_clients: dict[AddressFamily, AddressClient] = {}
        for family, section in (
            (AddressFamily.IPV4, config.public_ipv4),
            (AddressFamily.IPV6, config.public_ipv6),
        ):
            if section.enable:
                address_clients[family] = build_address_client(family, section, timeout)

        push_client = build_push_client(config.provider.proxy, timeout)

        logger.info(
            "Loaded %d provider(s): %s.",
            len(providers),
            ", ".join(p.name for p in providers) or "none",
        )
        return cls(
            providers,
            push_client,
            ipv4_client=address_clients.get(AddressFamily.IPV4),
            ipv6_client=address_clients.get(AddressFamily.IPV6),
            period=config.period_seconds,
        )

    @property
    def state(self) -> UpdaterState:
        """The current lifecycle state."""
        return self._state

    @property
    def families(self) -> tuple[AddressFamily, ...]:
        """Address families looked up by this updater."""
        return tuple(self._address_clients)

    # Lifecycle

    def run(self) -> None:
        """
        Start the background scheduler.

        Only the first call in the idle state starts the scheduler; later
        calls (and calls after `stop()`) do nothing. Must be called from
        within a running event loop.
        """
        if self._state is not UpdaterState.IDLE:
            return
        self._state = UpdaterState.SCHEDULED
        self._scheduler = asyncio.get_running_loop().create_task(
            self._schedule(),
            name="ddns-updater-scheduler",
        )
        logger.info("Updater scheduled every %gs.", self.period)

    async def _schedule(self) -> None:
        while True:
            await asyncio.sleep(self.period)
            try:
                await self.update()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error during scheduled update pass.")

    async def stop(self) -> None:
        """
        Stop the updater.

        Cancels the scheduler and every in-flight pass, then waits until all
        of them have exited. Only the first call does the work; concurrent and
        later calls wait for the same drain to finish.
        """
        if self._state is UpdaterState.STOPPED:
            await self._drained.wait()
            return
        self._state = UpdaterState.STOPPED

        tasks: list[asyncio.Task] = [*self._passes]
        if self._scheduler is not None:
            tasks.append(self._scheduler)
        for task in tasks:
            task.cancel()
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._scheduler = None
            self._drained.set()
        logger.info("Updater stopped.")

    async def aclose(self) -> None:
        """
        Stop the updater and close every HTTP client.

        Passes started by `update()` after `stop()` are cancelled and awaited
        as well, so no pass uses a client once it is closed.
        """
        await self.stop()
        late = [*self._passes]
        for task in late:
            task.cancel()
        await asyncio.gather(*late, return_exceptions=True)
        for client in self._address_clients.values():
            await client.aclose()
        await self._push_client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # Update pass

    async def update(self) -> PassReport:
        """
        Run one update pass.

        May be called in any lifecycle state and concurrently with a scheduled
        pass. The pass is tracked so that `stop()` cancels it; in that case
        `asyncio.CancelledError` propagates to the caller.

        Returns
        -------
        PassReport
            Resolved addresses and the outcome of every push.
        """
        task = asyncio.get_running_loop().create_task(self._update_pass())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)
        return await task

    async def _update_pass(self) -> PassReport:
        start_time = time.monotonic()

        families = list(self._address_clients)
        results = await asyncio.gather(
            *(self._lookup(self._address_clients[f]) for f in families),
        )
        addresses = dict(zip(families, results, strict=True))
        report = PassReport(addresses=addresses)

        available = {f: ip for f, ip in addresses.items() if ip}
        if not available:
            logger.warning("No public address available, skipping providers.")
            return report

        pushes = await asyncio.gather(
            *(self._push_provider(p, available) for p in self.providers),
        )
        for outcomes in pushes:
            report.outcomes.extend(outcomes)

        logger.info(
            "Update pass finished: %d pushed, %d failed (%.2fs).",
            len(report.succeeded()),
            len(report.failed()),
            time.monotonic() - start_time,
        )
        return report

    async def _lookup(self, client: AddressClient) -> str | None:
        try:
            ip = await client.lookup()
        except AddressLookupError as e:
            logger.error(  # noqa: TRY400
                "[%s] Failed to get public address: %s",
                client.family.label,
                e,
            )
            return None
        except Exception:
            logger.exception("[%s] Unexpected error getting public address.", client.family.label)
            return None
        logger.info("%s: %s", client.family.label, ip)
        return ip

    async def _push_provider(
        self,
        provider: CompiledProvider,
        addresses: dict[AddressFamily, str],
    ) -> list[PushOutcome]:
        # One task per provider: its families are pushed one after the other.
        outcomes: list[PushOutcome] = []
        for family, ip in addresses.items():
            if not provider.supports(family):
                logger.debug("[%s] %s not supported, skipped.", provider.name, family.label)
                outcomes.append(PushOutcome.skipped(provider.name, family))
                continue
            try:
                body = await self.push(provider, family, ip)
            except PushError as e:
                logger.error(  # noqa: TRY400
                    "[%s] Failed to push %s address: %s",
                    provider.name,
                    family.label,
                    e,
                )
                outcomes.append(
                    PushOutcome.error(provider.name, family, str(e), e.response),
                )
            except Exception as e:
                logger.exception(
                    "[%s] Unexpected error pushing %s address.",
                    provider.name,
                    family.label,
                )
                outcomes.append(PushOutcome.error(provider.name, family, str(e)))
            else:
                logger.info("[%s] %s address %s pushed.", provider.name, family.label, ip)
                outcomes.append(PushOutcome.success(provider.name, family, body))
        return outcomes

    async def push(self, provider: CompiledProvider, family: AddressFamily, ip: str) -> str:
        """
        Push one address to one provider.

        Parameters
        ----------
        provider : CompiledProvider
            The target provider.
        family : AddressFamily
            The address family of `ip`.
        ip : str
            The address to push.

        Returns
        -------
        str
            The accepted response body.

        Raises
        ------
        PushError
            If the request cannot be built or sent, or the provider answers
            with a response that is not accepted.
        """
        try:
            request = provider.build_request(family, ip, client=self._push_client)
        except TemplateRenderError as e:
            msg = f"failed to build {family.label} request: {e}"
            raise PushError(msg, provider=provider.name, family=family) from e
        if request is None:
            msg = f"{family.label} is not supported"
            raise PushError(msg, provider=provider.name, family=family)

        try:
            response = await self._push_client.send(request)
        except httpx.HTTPError as e:
            msg = f"request failed: {e}"
            raise PushError(msg, provider=provider.name, family=family) from e

        body = response.text
        logger.debug(
            "[%s] %s %s -> %d",
            provider.name,
            request.method,
            request.url,
            response.status_code,
        )
        if not provider.is_accepted_response(body):
            msg = f"unexpected response: {body}"
            raise PushError(msg, provider=provider.name, family=family, response=body)
        return body

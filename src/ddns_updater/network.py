"""
HTTP client construction for DDNS Updater.

This module builds the long-lived `httpx.AsyncClient` instances used by the
updater: one per enabled address family for public address lookup, plus one
push client shared by every provider. Clients may be routed through a static
proxy, and lookup clients may be pinned to a local source address with a
per-connection fallback to an unbound connection when the bound attempt fails.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import TYPE_CHECKING

import httpx

from ddns_updater import __version__
from ddns_updater.exceptions import AddressLookupError, ClientConfigError
from ddns_updater.models import AddressFamily

if TYPE_CHECKING:
    from typing import Final

    from ddns_updater.config import PublicAddressConfig


logger = logging.getLogger(__name__)

USER_AGENT: Final[str] = f"ddns-updater/{__version__}"


def parse_proxy(url: str) -> httpx.Proxy | None:
    """
    Parse a proxy URL.

    Parameters
    ----------
    url : str
        Proxy URL (e.g. "http://127.0.0.1:8080"), or an empty string.

    Returns
    -------
    httpx.Proxy | None
        The proxy, or None if `url` is empty.

    Raises
    ------
    ClientConfigError
        If the URL is not a valid proxy URL.
    """
    if not url:
        return None
    try:
        return httpx.Proxy(url)
    except (ValueError, httpx.InvalidURL) as e:
        msg = f'invalid proxy url "{url}": {e}'
        raise ClientConfigError(msg) from e


def _split_host_port(value: str) -> tuple[str, int]:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        pass
    else:
        return value, 0

    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
        if not sep:
            host, sep, port = value[1:].partition("]")
            if not sep or port:
                msg = f'invalid local address "{value}"'
                raise ClientConfigError(msg)
            return host, 0
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        return value, 0

    try:
        return host, int(port)
    except ValueError:
        msg = f'invalid port in local address "{value}"'
        raise ClientConfigError(msg) from None


def resolve_local_address(value: str, family: AddressFamily) -> str:
    """
    Resolve a configured local address to a concrete IP of `family`.

    Parameters
    ----------
    value : str
        An IP address, "host:port" / "[ipv6]:port", or a host name.
    family : AddressFamily
        The address family the result must belong to.

    Returns
    -------
    str
        The resolved local IP address.

    Raises
    ------
    ClientConfigError
        If the address cannot be resolved in `family` or names a non-zero port.
    """
    host, port = _split_host_port(value)
    if port:
        msg = f'local {family.label} address "{value}" must not set a port'
        raise ClientConfigError(msg)

    try:
        infos = socket.getaddrinfo(
            host,
            0,
            family=family.socket_family,
            type=socket.SOCK_STREAM,
        )
    except (socket.gaierror, UnicodeError) as e:
        msg = f'invalid local {family.label} address "{value}": {e}'
        raise ClientConfigError(msg) from e

    if not infos:
        msg = f'invalid local {family.label} address "{value}"'
        raise ClientConfigError(msg)
    return str(infos[0][4][0])


class LocalAddressFallbackTransport(httpx.AsyncBaseTransport):
    """
    Transport that prefers a bound local address but falls back to unbound.

    Every request is first sent through the bound transport. If establishing
    the connection fails, the same request is retried once through the
    unbound transport. The decision is made for each request, so a local
    address that becomes usable again is picked up by the next connection.
    """

    def __init__(
        self,
        bound: httpx.AsyncBaseTransport,
        unbound: httpx.AsyncBaseTransport,
        label: str = "",
    ) -> None:
        """
        Initialize the transport.

        Parameters
        ----------
        bound : httpx.AsyncBaseTransport
            Transport bound to the local address.
        unbound : httpx.AsyncBaseTransport
            Transport without a local address constraint.
        label : str, optional
            Label used in log messages (e.g. "IPv4").
        """
        self._bound = bound
        self._unbound = unbound
        self._label = label

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """Send `request`, retrying unbound if the bound connection fails."""
        try:
            return await self._bound.handle_async_request(request)
        except httpx.ConnectError as e:
            logger.warning(
                "[%s] Failed to connect from local address, retrying without it: '%s'",
                self._label or "client",
                e,
            )
        return await self._unbound.handle_async_request(request)

    async def aclose(self) -> None:
        """Close both underlying transports."""
        await self._bound.aclose()
        await self._unbound.aclose()


def build_transport(
    proxy: httpx.Proxy | None = None,
    local_address: str | None = None,
    label: str = "",
) -> httpx.AsyncBaseTransport:
    """
    Build the transport for a client.

    Parameters
    ----------
    proxy : httpx.Proxy | None, optional
        Static proxy used for every request.
    local_address : str | None, optional
        Local source address; enables the unbound fallback.
    label : str, optional
        Label used in log messages.

    Returns
    -------
    httpx.AsyncBaseTransport
        The transport.
    """
    unbound = httpx.AsyncHTTPTransport(proxy=proxy)
    if not local_address:
        return unbound
    bound = httpx.AsyncHTTPTransport(proxy=proxy, local_address=local_address)
    return LocalAddressFallbackTransport(bound, unbound, label=label)


class AddressClient:
    """
    Looks up the caller's public address of one family.

    The response body of a GET to the configured URL is the address.

    Attributes
    ----------
    family : AddressFamily
        The address family looked up.
    url : httpx.URL
        The lookup URL.
    client : httpx.AsyncClient
        The underlying HTTP client, reused across passes.
    """

    def __init__(
        self,
        family: AddressFamily,
        url: httpx.URL,
        client: httpx.AsyncClient,
    ) -> None:
        self.family = family
        self.url = url
        self.client = client

    async def lookup(self) -> str:
        """
        Return the current public address.

        Surrounding whitespace is stripped and the body must parse as an
        address of this family, rather than being passed on as raw text.

        Returns
        -------
        str
            The address in canonical text form.

        Raises
        ------
        AddressLookupError
            If the request fails, the service answers with an error status,
            or the body is not an address of the expected family.
        """
        label = self.family.label
        try:
            response = await self.client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"public {label} address service returned status {e.response.status_code}"
            raise AddressLookupError(msg, self.family) from e
        except httpx.HTTPError as e:
            msg = f"failed to get public {label} address: {e}"
            raise AddressLookupError(msg, self.family) from e

        text = response.text.strip()
        try:
            address = ipaddress.ip_address(text)
        except ValueError:
            msg = f'public {label} address service returned an invalid address: "{text[:64]}"'
            raise AddressLookupError(msg, self.family) from None

        expected = 4 if self.family is AddressFamily.IPV4 else 6
        if address.version != expected:
            msg = f'public {label} address service returned "{address}"'
            raise AddressLookupError(msg, self.family)

        logger.debug("[%s] Public address: %s", label, address)
        return str(address)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()


def _parse_lookup_url(url: str, family: AddressFamily) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        msg = f"invalid url about public {family.label} address provider: {e}"
        raise ClientConfigError(msg) from e
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        msg = f'invalid url about public {family.label} address provider: "{url}"'
        raise ClientConfigError(msg)
    return parsed


def build_address_client(
    family: AddressFamily,
    config: PublicAddressConfig,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AddressClient:
    """
    Build the public address lookup client for `family`.

    Parameters
    ----------
    family : AddressFamily
        The address family looked up by the client.
    config : PublicAddressConfig
        Lookup URL, optional local address and optional proxy.
    timeout : float
        Request timeout in seconds.
    transport : httpx.AsyncBaseTransport | None, optional
        Transport to use instead of building one from `config`.

    Returns
    -------
    AddressClient
        The lookup client.

    Raises
    ------
    ClientConfigError
        If the URL, local address or proxy is invalid.
    """
    url = _parse_lookup_url(config.url, family)
    if transport is None:
        proxy = parse_proxy(config.proxy)
        local_address = None
        if config.laddr:
            local_address = resolve_local_address(config.laddr, family)
            logger.debug("[%s] Local address: %s", family.label, local_address)
        transport = build_transport(proxy, local_address, label=family.label)

    client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": USER_AGENT},
        trust_env=False,
    )
    return AddressClient(family, url, client)


def build_push_client(
    proxy_url: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Build the client used to push addresses to every provider.

    Parameters
    ----------
    proxy_url : str
        Optional proxy URL (empty for direct connections).
    timeout : float
        Request timeout in seconds.
    transport : httpx.AsyncBaseTransport | None, optional
        Transport to use instead of building one.

    Returns
    -------
    httpx.AsyncClient
        The push client.

    Raises
    ------
    ClientConfigError
        If the proxy URL is invalid.
    """
    if transport is None:
        transport = build_transport(parse_proxy(proxy_url), label="push")
    return httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": USER_AGENT},
        trust_env=False,
    )

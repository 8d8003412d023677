"""
Data models for DDNS Updater.

This module defines the core data structures used throughout the application:
the address family enumeration and the per-push / per-pass result models
returned by an update pass.
"""

from __future__ import annotations

import socket
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class AddressFamily(StrEnum):
    """
    Supported address families.

    The value of each member is also the reserved template argument name
    under which the current address is exposed to provider templates.

    Attributes
    ----------
    IPV4 : str
        IPv4 address family.
    IPV6 : str
        IPv6 address family.
    """

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def label(self) -> str:
        """Human-readable family name ("IPv4" / "IPv6")."""
        return "IPv4" if self is AddressFamily.IPV4 else "IPv6"

    @property
    def socket_family(self) -> socket.AddressFamily:
        """The matching `socket` address family."""
        return socket.AF_INET if self is AddressFamily.IPV4 else socket.AF_INET6


PushStatus = Literal["success", "error", "skipped"]


class PushOutcome(BaseModel):
    """
    Outcome of pushing one address family to one provider.

    Attributes
    ----------
    provider : str
        The provider name.
    family : AddressFamily
        The address family that was pushed.
    status : Literal["success", "error", "skipped"]
        "skipped" means the provider does not support the family.
    message : str
        Human-readable message.
    response : str | None
        The response body observed from the provider, if any.
    """

    provider: str
    family: AddressFamily
    status: PushStatus
    message: str
    response: str | None = None

    @classmethod
    def success(
        cls,
        provider: str,
        family: AddressFamily,
        response: str,
    ) -> PushOutcome:
        """
        Create a successful outcome.

        Parameters
        ----------
        provider : str
            The provider name.
        family : AddressFamily
            The pushed address family.
        response : str
            The accepted response body.

        Returns
        -------
        PushOutcome
            A success outcome instance.
        """
        return cls(
            provider=provider,
            family=family,
            status="success",
            message=f"{family.label} address pushed",
            response=response,
        )

    @classmethod
    def error(
        cls,
        provider: str,
        family: AddressFamily,
        message: str,
        response: str | None = None,
    ) -> PushOutcome:
        """
        Create a failed outcome.

        Parameters
        ----------
        provider : str
            The provider name.
        family : AddressFamily
            The address family that failed.
        message : str
            Human-readable failure reason.
        response : str | None, optional
            The unexpected response body, if one was received.

        Returns
        -------
        PushOutcome
            An error outcome instance.
        """
        return cls(
            provider=provider,
            family=family,
            status="error",
            message=message,
            response=response,
        )

    @classmethod
    def skipped(cls, provider: str, family: AddressFamily) -> PushOutcome:
        """Create an outcome for a family the provider does not support."""
        return cls(
            provider=provider,
            family=family,
            status="skipped",
            message=f"{family.label} not supported by provider",
        )


class PassReport(BaseModel):
    """
    Result of one update pass.

    Attributes
    ----------
    addresses : dict[AddressFamily, str | None]
        The public address resolved for each configured family, or None when
        the lookup failed during this pass.
    outcomes : list[PushOutcome]
        Push outcomes in provider order.
    """

    addresses: dict[AddressFamily, str | None] = Field(default_factory=dict)
    outcomes: list[PushOutcome] = Field(default_factory=list)

    def succeeded(self) -> list[PushOutcome]:
        """Return the successful push outcomes."""
        return [o for o in self.outcomes if o.status == "success"]

    def failed(self) -> list[PushOutcome]:
        """Return the failed push outcomes."""
        return [o for o in self.outcomes if o.status == "error"]

    def for_provider(self, provider: str) -> list[PushOutcome]:
        """Return all outcomes recorded for `provider`."""
        return [o for o in self.outcomes if o.provider == provider]

    @property
    def ok(self) -> bool:
        """True when every configured family resolved and no push failed."""
        return all(self.addresses.values()) and not self.failed()

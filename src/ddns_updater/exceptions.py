"""
Exception types for DDNS Updater.

Construction-time errors derive from `ConfigurationError` and stop the updater
from starting. Per-cycle errors (`AddressLookupError`, `PushError`) are raised
inside an update pass, logged, and never escape it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from ddns_updater.models import AddressFamily


class DDNSUpdaterError(Exception):
    """Base class for all DDNS Updater errors."""


class ConfigurationError(DDNSUpdaterError):
    """Base class for errors that make the updater configuration unusable."""


class ConfigValidationError(ConfigurationError):
    """
    Exception raised when configuration validation fails.

    This exception is raised when the TOML configuration contains
    invalid types or values.

    Attributes
    ----------
    config_path : Path | None
        Path to the configuration file that failed validation.
    """

    def __init__(self, message: str, config_path: Path | None = None) -> None:
        """
        Initialize ConfigValidationError.

        Parameters
        ----------
        message : str
            Human-readable error message.
        config_path : Path | None, optional
            Path to the configuration file.
        """
        self.config_path = config_path
        super().__init__(message)


class ProviderLoadError(ConfigurationError):
    """
    Exception raised when a provider definition cannot be loaded.

    Attributes
    ----------
    provider : str
        Name of the provider (usually its file name).
    """

    def __init__(self, message: str, provider: str) -> None:
        self.provider = provider
        super().__init__(f'Provider "{provider}": {message}')


class ClientConfigError(ConfigurationError):
    """Raised when an HTTP client cannot be built (bad URL, local address or proxy)."""


class TemplateError(DDNSUpdaterError):
    """
    Base class for template errors.

    Attributes
    ----------
    template : str
        Name of the template that failed.
    """

    def __init__(self, message: str, template: str) -> None:
        self.template = template
        super().__init__(f'Template "{template}": {message}')


class TemplateSyntaxError(TemplateError):
    """
    Raised when a template cannot be parsed.

    Attributes
    ----------
    offset : int
        Character offset of the offending action in the template source.
    """

    def __init__(self, message: str, template: str, offset: int) -> None:
        self.offset = offset
        super().__init__(f"{message} (at offset {offset})", template)


class TemplateRenderError(TemplateError):
    """Raised when a template references an argument that was not supplied."""


class AddressLookupError(DDNSUpdaterError):
    """
    Raised when the public address of a family cannot be determined.

    Attributes
    ----------
    family : AddressFamily
        The address family that failed.
    """

    def __init__(self, message: str, family: AddressFamily) -> None:
        self.family = family
        super().__init__(message)


class PushError(DDNSUpdaterError):
    """
    Raised when a provider push fails or the provider rejects the address.

    Attributes
    ----------
    provider : str
        Provider name.
    family : AddressFamily
        Address family being pushed.
    response : str | None
        The observed response body, when one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        family: AddressFamily,
        response: str | None = None,
    ) -> None:
        self.provider = provider
        self.family = family
        self.response = response
        super().__init__(message)

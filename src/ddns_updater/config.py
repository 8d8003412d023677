"""
Configuration management for DDNS Updater.

This module handles loading and validating configuration from TOML files
and command-line arguments. Configuration priority (high to low):
1. Command-line arguments
2. Configuration file
3. Default values
"""

from __future__ import annotations

import argparse
import copy
import logging
import re
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError, model_validator
from pydantic_core import PydanticCustomError

from ddns_updater.exceptions import ConfigValidationError
from ddns_updater.logging_config import DATE_FORMAT, LOG_FORMAT

if TYPE_CHECKING:
    from typing import Any, Final, Self

# Configure basic logging for early startup messages.
# This ensures log messages during config loading (before "setup_logging()" is called)
# are visible with proper formatting. The main logging setup in "setup_logging()"
# will reconfigure the "ddns_updater" logger with full settings later.
logger_basic = logging.getLogger(__name__)
logger_basic.setLevel(logging.DEBUG)
handler = logging.StreamHandler()
formatter = logging.Formatter(
    fmt=LOG_FORMAT,
    datefmt=DATE_FORMAT,
)
handler.setFormatter(formatter)
logger_basic.addHandler(handler)
logger_basic.propagate = False


DEFAULT_PERIOD: Final[float] = 60.0
DEFAULT_TIMEOUT: Final[float] = 15.0
DEFAULT_CONFIG_PATH: Final[Path] = Path("config.toml")

_DURATION_UNITS: Final[dict[str, float]] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART: Final[re.Pattern[str]] = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts a number of seconds or a duration string made of
    number+unit parts such as "15s", "1m30s" or "500ms"
    (units: ns, us, ms, s, m, h). "0" and 0 mean "use the default".

    Parameters
    ----------
    value : Any
        The raw configuration value.

    Returns
    -------
    float
        The duration in seconds.

    Raises
    ------
    ValueError
        If the value is not a valid non-negative duration.
    """
    if isinstance(value, bool):
        msg = "invalid duration"
        raise ValueError(msg)  # noqa: TRY004
    if isinstance(value, int | float):
        if value < 0:
            msg = "duration must not be negative"
            raise ValueError(msg)
        return float(value)
    if not isinstance(value, str):
        msg = "invalid duration"
        raise ValueError(msg)  # noqa: TRY004

    text = value.strip()
    if text in {"", "0"}:
        return 0.0

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        msg = f'invalid duration "{value}" (expected e.g. "15s", "1m30s")'
        raise ValueError(msg)
    return total


Duration = Annotated[float, BeforeValidator(parse_duration)]


# Configuration models (Pydantic with type validation and coercion)


class PublicAddressConfig(BaseModel):
    """
    Public address lookup configuration for one address family.

    Attributes
    ----------
    enable : bool
        Whether the family is looked up and pushed.
    url : str
        URL of the public address service; the response body is the address.
    laddr : str
        Optional local source address for lookup connections.
    proxy : str
        Optional proxy URL for lookup requests.
    """

    model_config = ConfigDict(extra="forbid")

    enable: bool = False
    url: str = ""
    laddr: str = ""
    proxy: str = ""


class ProviderConfig(BaseModel):
    """
    Provider configuration.

    Attributes
    ----------
    dir : str
        Directory containing provider definition files.
    item : list[str]
        Provider definition file names, pushed in this order.
    proxy : str
        Optional proxy URL for push requests.
    """

    model_config = ConfigDict(extra="forbid")

    dir: str = "provider"
    item: list[str] = []
    proxy: str = ""

    @property
    def dir_as_path(self) -> Path:
        """
        Get the provider directory as a Path object.

        Returns
        -------
        Path
            The provider directory.
        """
        return Path(self.dir)


class Config(BaseModel):
    """
    Application configuration.

    Attributes
    ----------
    period : float
        Seconds between scheduled update passes (0 means the default, 1 minute).
    timeout : float
        Request timeout in seconds for every client (0 means the default, 15 seconds).
    log_file : str
        Optional log file path; empty logs to the console only.
    log_level : str
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    public_ipv4 : PublicAddressConfig
        IPv4 lookup configuration.
    public_ipv6 : PublicAddressConfig
        IPv6 lookup configuration.
    provider : ProviderConfig
        Provider configuration.
    """

    model_config = ConfigDict(extra="forbid")

    period: Duration = 0.0
    timeout: Duration = 0.0
    log_file: str = ""
    log_level: str = "INFO"
    public_ipv4: PublicAddressConfig = PublicAddressConfig()
    public_ipv6: PublicAddressConfig = PublicAddressConfig()
    provider: ProviderConfig = ProviderConfig()

    @model_validator(mode="after")
    def check_address_families(self) -> Self:
        """
        Validate that at least one address family is enabled and usable.

        Returns
        -------
        Self
            The validated model.

        Raises
        ------
        PydanticCustomError
            If both families are disabled, or an enabled family has no URL.
        """
        err_type = "address_config_error"
        if not self.public_ipv4.enable and not self.public_ipv6.enable:
            raise PydanticCustomError(
                err_type,
                "IPv4/IPv6 are all disabled",
            )
        for name in ("public_ipv4", "public_ipv6"):
            section: PublicAddressConfig = getattr(self, name)
            if section.enable and not section.url:
                raise PydanticCustomError(
                    err_type,
                    "{section}.url is required when {section} is enabled",
                    {"section": name},
                )
        return self

    @property
    def period_seconds(self) -> float:
        """The update period in seconds, with the default applied."""
        return self.period or DEFAULT_PERIOD

    @property
    def timeout_seconds(self) -> float:
        """The request timeout in seconds, with the default applied."""
        return self.timeout or DEFAULT_TIMEOUT


def _format_validation_errors(
    error: ValidationError,
    config_path: Path | None,
) -> str:
    """
    Format Pydantic validation errors into human-readable messages.

    Parameters
    ----------
    error : ValidationError
        Pydantic validation error.
    config_path : Path | None
        Path to the configuration file.

    Returns
    -------
    str
        Human-readable error message.
    """
    lines: list[str] = []

    if config_path:
        lines.append(f'Configuration error in "{config_path}":')
    else:
        lines.append("Configuration error:")

    for err in error.errors():
        # Build field path (e.g., "public_ipv4.enable")
        field_path = ".".join(str(loc) for loc in err["loc"]) or "config"

        error_type = err["type"]
        error_input = err["input"]
        input_type = type(error_input).__name__

        value_repr = (
            f'"{error_input}"' if isinstance(error_input, str) else repr(error_input)
        )

        if error_type == "address_config_error":
            lines.append(f"  [{field_path}]: {err['msg']}.")
        elif error_type == "extra_forbidden":
            lines.append(f"  [{field_path}]: Unknown configuration key (value: {value_repr}).")
        else:
            expected_type = _get_expected_type(error_type)
            lines.append(
                f"  [{field_path}]: Expected {expected_type}, got {input_type} (value: {value_repr}). {err['msg']}.",
            )

    return "\n".join(lines)


def _get_expected_type(error_type: str) -> str:
    """
    Get human-readable expected type from Pydantic error type.

    Parameters
    ----------
    error_type : str
        Pydantic error type string.

    Returns
    -------
    str
        Human-readable type name.
    """
    type_mapping = {
        "int_type": "int",
        "int_parsing": "int",
        "bool_type": "bool",
        "bool_parsing": "bool",
        "string_type": "str",
        "list_type": "list",
        "model_type": "table",
        "value_error": "duration",
    }
    return type_mapping.get(error_type, error_type)


def validate_config_dict(
    data: dict[str, Any],
    config_path: Path | None = None,
) -> Config:
    """
    Validate configuration dictionary using Pydantic.

    Parameters
    ----------
    data : dict[str, Any]
        Configuration dictionary to validate.
    config_path : Path | None, optional
        Path to the configuration file (for error messages).

    Returns
    -------
    Config
        The validated configuration.

    Raises
    ------
    ConfigValidationError
        If validation fails.
    """
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        msg = _format_validation_errors(e, config_path)
        raise ConfigValidationError(msg, config_path) from e


def load_config_from_file(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a TOML file.

    Parameters
    ----------
    config_path : Path
        Path to the configuration file.

    Returns
    -------
    dict[str, Any]
        Parsed configuration dictionary.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    tomllib.TOMLDecodeError
        If the configuration file is not valid TOML.
    """
    with config_path.open("rb") as f:
        return tomllib.load(f)


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict[str, Any]
        Base configuration.
    override : dict[str, Any]
        Override configuration (takes precedence).

    Returns
    -------
    dict[str, Any]
        Merged configuration.
    """
    # Use deep copy to avoid modifying the original base configuration
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_path(value: str, base_dir: Path | None) -> str:
    path = Path(value).expanduser()
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return str(path)


def dict_to_config(
    data: dict[str, Any],
    config_path: Path | None = None,
) -> Config:
    """
    Convert a dictionary to a Config object.

    Relative provider directories and log file paths are resolved against
    the directory of `config_path` when given.

    Parameters
    ----------
    data : dict[str, Any]
        Configuration dictionary.
    config_path : Path | None, optional
        Path to the configuration file the dictionary was read from.

    Returns
    -------
    Config
        Configuration object.

    Raises
    ------
    ConfigValidationError
        If validation fails.
    """
    data = copy.deepcopy(data)
    base_dir = config_path.parent if config_path is not None else None

    # Handle path expansion before Pydantic validation
    if isinstance(data.get("log_file"), str) and data["log_file"]:
        data["log_file"] = _resolve_path(data["log_file"], base_dir)

    provider = data.setdefault("provider", {})
    if isinstance(provider, dict):
        provider_dir = provider.get("dir", ProviderConfig().dir)
        if isinstance(provider_dir, str):
            provider["dir"] = _resolve_path(provider_dir, base_dir)

    return validate_config_dict(data, config_path)


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Parameters
    ----------
    args : list[str] | None, optional
        Command-line arguments. If None, uses sys.argv.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="ddns-updater",
        description="DDNS Updater - report public IPv4/IPv6 addresses to DDNS providers",
    )

    # Config arguments
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.toml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Update once and exit",
    )

    # Schedule arguments
    parser.add_argument(
        "--period",
        type=str,
        default=None,
        help='Update period (e.g. "1m", "90s")',
    )
    parser.add_argument(
        "--timeout",
        type=str,
        default=None,
        help='Request timeout (e.g. "15s")',
    )

    # Logging arguments
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        dest="log_file",
        default=None,
        help="Path to the log file",
    )

    return parser.parse_args(args)


def load_config(args: argparse.Namespace | None = None) -> Config:
    """
    Load configuration from file and command-line arguments.

    Priority (high to low):
    1. Command-line arguments
    2. Configuration file
    3. Default values

    Parameters
    ----------
    args : argparse.Namespace | None, optional
        Parsed command-line arguments.

    Returns
    -------
    Config
        Loaded configuration.

    Raises
    ------
    ConfigValidationError
        If the configuration file is missing, malformed or invalid.
    """
    if args is None:
        args = parse_args()

    # Start with empty config dict
    config_dict: dict[str, Any] = {}

    # Load from config file if specified or if default exists
    config_path = args.config
    if config_path is not None:
        config_path = config_path.expanduser()
    elif DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    if config_path is not None:
        if not config_path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise ConfigValidationError(msg, config_path)
        logger_basic.info('Loading configuration from "%s".', config_path)
        try:
            config_dict = load_config_from_file(config_path)
        except tomllib.TOMLDecodeError as e:
            msg = f'Failed to parse configuration file "{config_path}": {e}'
            raise ConfigValidationError(msg, config_path) from e
        except OSError as e:
            msg = f'Failed to read configuration file "{config_path}": {e}'
            raise ConfigValidationError(msg, config_path) from e

    # Apply command-line overrides
    cli_overrides: dict[str, Any] = {}

    if args.period is not None:
        cli_overrides["period"] = args.period
    if args.timeout is not None:
        cli_overrides["timeout"] = args.timeout
    if args.log_level is not None:
        cli_overrides["log_level"] = args.log_level
    if args.log_file is not None:
        cli_overrides["log_file"] = str(args.log_file.expanduser().absolute())

    if cli_overrides:
        config_dict = merge_config(config_dict, cli_overrides)

    return dict_to_config(config_dict, config_path)

"""Configuration management for formswatch.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every value before the
watcher uses it. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings. A :class:`WatchContext` bundles the
configuration with the package logger and is passed explicitly to the components.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File (``config.ini`` via configparser, ``config.toml`` via tomli)
    4. Defaults

Supported Environment Variables:
    * ``FORMSWATCH_BASE_DIR``: Root under which ``formswatch/<subdir>`` lives.
    * ``FORMSWATCH_SUBDIR``: Default watch subdirectory.
    * ``FORMSWATCH_LOG_FILE``: Path to the log file.
    * ``FORMSWATCH_LOG_LEVEL``: Logging level.
    * ``FORMSWATCH_GRACE_DELAY``: Delay after a wake-up before events are read.
    * ``FORMSWATCH_RETRY_DELAY``: Delay before retrying a failed watch registration.
    * ``FORMSWATCH_MAX_PENDING_EVENTS``: Distinct entries buffered before an overflow is reported.
"""

from __future__ import annotations

import logging
import os
import tempfile
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "WatchContext", "default_config", "load_config"]

SECTION = "formswatch"
DEFAULT_SUBDIR = "forms"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        base_dir (str): Directory holding the ``formswatch`` root. Defaults to the system temp dir.
        subdir (str): Watch subdirectory used when none is given. Defaults to "forms".
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        grace_delay (float): Seconds to wait after a wake-up so rapid writes coalesce. Defaults to 0.1.
        retry_delay (float): Seconds to wait before re-registering after a failure. Defaults to 1.0.
        max_pending_events (int): Distinct entries buffered per wake-up before overflow. Defaults to 256.
    """

    base_dir: str
    subdir: str = DEFAULT_SUBDIR
    log_file: Optional[str] = None
    log_level: str = "INFO"
    grace_delay: float = 0.1
    retry_delay: float = 1.0
    max_pending_events: int = 256


@dataclass
class WatchContext:
    """Process-wide settings handed to every component.

    Attributes:
        config (Config): The resolved configuration.
        logger (logging.Logger): Parent logger for the package.
    """

    config: Config
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("formswatch"))

    @property
    def root_dir(self) -> Path:
        """Return ``<base_dir>/formswatch``."""
        return Path(self.config.base_dir) / "formswatch"

    def child_logger(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)


def default_config() -> Config:
    """Return a Config with all defaults applied and no external sources consulted."""
    return Config(base_dir=tempfile.gettempdir())


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations, ``.ini`` before ``.toml`` in each:
    1. Current working directory.
    2. `$XDG_CONFIG_HOME/formswatch/` (Linux/macOS).
    3. `%APPDATA%\\formswatch\\` (Windows).
    4. `~/.config/formswatch/` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    dirs = [""]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        dirs.append(os.path.join(os.path.expanduser(xdg_config_home), "formswatch"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        dirs.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), "formswatch"))
    else:
        dirs.append(os.path.join(os.path.expanduser("~"), ".config", "formswatch"))

    paths = []
    for directory in dirs:
        for name in ("config.ini", "config.toml"):
            paths.append(os.path.join(directory, name) if directory else name)
    return paths


def _read_config_file(path: str) -> Dict[str, Any]:
    """Read the ``formswatch`` section of an INI or TOML file.

    Args:
        path (str): The config file path.

    Returns:
        Dict[str, Any]: Raw values. Parse errors are logged and yield an empty dict.
    """
    values: Dict[str, Any] = {}
    if path.endswith(".toml"):
        try:
            with open(path, "rb") as f:
                data = tomli.load(f)
        except (tomli.TOMLDecodeError, OSError) as e:
            logger.error(f"Failed to parse config file {path}: {e}")
            return values
        section = data.get(SECTION, {})
        if isinstance(section, dict):
            values.update({k: v for k, v in section.items() if v is not None and v != ""})
        return values

    parser = ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8-sig")
        if SECTION in parser:
            for key, value in parser[SECTION].items():
                if value is not None and value != "":
                    values[key] = value
    except (ConfigParserError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
    return values


def _validate_log_path(path_str: str) -> str:
    """Resolve the log file path and verify it can be written.

    Args:
        path_str (str): The raw path (``~`` is expanded).

    Returns:
        str: The absolute path.

    Raises:
        ValueError: If the parent directory is missing, the target is not a
            regular file, or it cannot be opened for appending.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        parent = path.parent.resolve(strict=True)
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ValueError(f"Invalid path (parent directory not found): {path}") from e
    resolved = parent / path.name

    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _to_float(values: Dict[str, Any], key: str, allow_zero: bool) -> None:
    try:
        values[key] = float(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {key}: {values[key]}") from e
    if values[key] < 0 or (not allow_zero and values[key] == 0):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{key} must be {qualifier}, got {values[key]}")


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically ``vars(parser.parse_args())``.
            Keys matching Config attributes override lower-priority sources. Values of
            None are ignored. Unknown keys (e.g. ``command``) are dropped.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a numeric value is invalid, the log level is unknown, or the
            log file path cannot be used.

    Examples:
        >>> import os
        >>> os.environ["FORMSWATCH_GRACE_DELAY"] = "0.25"
        >>> load_config({}).grace_delay
        0.25
        >>> del os.environ["FORMSWATCH_GRACE_DELAY"]
        >>> load_config({"subdir": "peerA"}).subdir
        'peerA'
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "base_dir": None,
        "subdir": DEFAULT_SUBDIR,
        "log_file": None,
        "log_level": "INFO",
        "grace_delay": 0.1,
        "retry_delay": 1.0,
        "max_pending_events": 256,
    }

    # 2. Config File (first one found wins)
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            config_values.update(_read_config_file(path))
            break

    # 3. Environment Variables
    env_map = {
        "FORMSWATCH_BASE_DIR": "base_dir",
        "FORMSWATCH_SUBDIR": "subdir",
        "FORMSWATCH_LOG_FILE": "log_file",
        "FORMSWATCH_LOG_LEVEL": "log_level",
        "FORMSWATCH_GRACE_DELAY": "grace_delay",
        "FORMSWATCH_RETRY_DELAY": "retry_delay",
        "FORMSWATCH_MAX_PENDING_EVENTS": "max_pending_events",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    _to_float(config_values, "grace_delay", allow_zero=True)
    _to_float(config_values, "retry_delay", allow_zero=False)

    try:
        config_values["max_pending_events"] = int(config_values["max_pending_events"])
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Invalid integer for max_pending_events: {config_values['max_pending_events']}"
        ) from e
    if not (1 <= config_values["max_pending_events"] <= 10000):
        raise ValueError(
            f"max_pending_events must be between 1 and 10000, got {config_values['max_pending_events']}"
        )

    if config_values["base_dir"]:
        config_values["base_dir"] = os.path.abspath(os.path.expanduser(str(config_values["base_dir"])))
    else:
        config_values["base_dir"] = tempfile.gettempdir()

    subdir = str(config_values["subdir"] or "").strip()
    config_values["subdir"] = subdir or DEFAULT_SUBDIR

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_path(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)

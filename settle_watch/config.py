"""Configuration management for settle-watch.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments, and validates the watched directory and extension filter before any
watching begins.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``SETTLE_WATCH_ROOT_PATH``: Directory to watch.
    * ``SETTLE_WATCH_EXTENSION_FILTER``: Single glob filter such as ``*.txt``.
    * ``SETTLE_WATCH_TICK_INTERVAL``: Seconds between flush passes.
    * ``SETTLE_WATCH_QUIESCENCE_WINDOW``: Seconds a file must stay quiet to settle.
    * ``SETTLE_WATCH_RECURSIVE``: Watch subdirectories (true/false).
    * ``SETTLE_WATCH_LOG_FILE``: Path to the log file.
    * ``SETTLE_WATCH_LOG_LEVEL``: Logging level.

Config files are looked up as ``./config.ini``, then
``$XDG_CONFIG_HOME/settle-watch/config.ini`` (``%APPDATA%`` on Windows,
``~/.config`` otherwise), section ``[settle-watch]``.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "InvalidConfigurationError",
    "check_file_extension",
    "is_full_path",
    "load_config",
]

CONFIG_SECTION = "settle-watch"
EXTENSION_PREFIX = "*."
MATCH_ALL = "*"

DEFAULTS: Dict[str, Any] = {
    "root_path": None,
    "extension_filter": MATCH_ALL,
    "tick_interval": 10.0,
    "quiescence_window": 0.05,
    "recursive": True,
    "log_file": None,
    "log_level": "INFO",
}

ENV_MAP = {
    "SETTLE_WATCH_ROOT_PATH": "root_path",
    "SETTLE_WATCH_EXTENSION_FILTER": "extension_filter",
    "SETTLE_WATCH_TICK_INTERVAL": "tick_interval",
    "SETTLE_WATCH_QUIESCENCE_WINDOW": "quiescence_window",
    "SETTLE_WATCH_RECURSIVE": "recursive",
    "SETTLE_WATCH_LOG_FILE": "log_file",
    "SETTLE_WATCH_LOG_LEVEL": "log_level",
}

TRUE_STRINGS = ("true", "1", "yes", "on")
FALSE_STRINGS = ("false", "0", "no", "off")


class InvalidConfigurationError(ValueError):
    """Raised when the watch session cannot be set up from the given settings."""


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        root_path (str): Absolute path of the directory to watch.
        extension_filter (str): Single glob filter, e.g. ``"*.txt"``. ``"*"`` matches every file.
        tick_interval (float): Seconds between flush passes. Defaults to 10.0.
        quiescence_window (float): Seconds a file must stay quiet to settle. Defaults to 0.05.
        recursive (bool): Whether subdirectories are watched. Defaults to True.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
    """

    root_path: str
    extension_filter: str = MATCH_ALL
    tick_interval: float = 10.0
    quiescence_window: float = 0.05
    recursive: bool = True
    log_file: Optional[str] = None
    log_level: str = "INFO"


def is_full_path(path: str) -> bool:
    """Return True if ``path`` is a usable absolute path.

    Rejects blank strings, strings containing NUL, relative paths, and bare
    filesystem roots (``/`` or ``C:\\``), which are never sensible watch roots.

    Args:
        path (str): The candidate path.

    Returns:
        bool: Whether the path is absolute and not a bare root.
    """
    if not path or not path.strip() or "\x00" in path:
        return False
    if not os.path.isabs(path):
        return False
    p = Path(path)
    return p != Path(p.anchor)


def check_file_extension(ext: str) -> bool:
    """Return True if ``ext`` is a single-extension glob such as ``*.txt``.

    >>> check_file_extension("*.txt")
    True
    >>> check_file_extension("*.a*.b")
    False
    >>> check_file_extension("txt")
    False
    """
    if not ext or not ext.strip():
        return False
    if not ext.lower().startswith(EXTENSION_PREFIX):
        return False
    parts = [part for part in ext.split(EXTENSION_PREFIX) if part]
    return len(parts) == 1


def _get_config_file_paths() -> List[str]:
    """Return candidate config file paths, highest priority first."""
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        base = os.path.expanduser(xdg_config_home)
    elif os.name == "nt" and os.environ.get("APPDATA"):
        base = os.path.expanduser(os.environ["APPDATA"])
    else:
        base = os.path.join(os.path.expanduser("~"), ".config")
    paths.append(os.path.join(base, CONFIG_SECTION, "config.ini"))
    return paths


def _read_config_file() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for path in _get_config_file_paths():
        if not os.path.isfile(path):
            continue
        logger.debug(f"Loading config from {path}")
        parser = ConfigParser(interpolation=None)
        try:
            parser.read(path, encoding="utf-8-sig")
            if CONFIG_SECTION in parser:
                for key, value in parser[CONFIG_SECTION].items():
                    if value is not None and value != "":
                        values[key] = value
        except (ConfigParserError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to parse config file {path}: {e}")
        break
    return values


def _validate_root_path(path_str: str) -> str:
    """Resolve the watch root and make sure it is an existing directory.

    Relative paths are resolved against the current working directory and a
    leading ``~`` is expanded.

    Raises:
        InvalidConfigurationError: If the path is blank, a bare root, missing,
            or not a directory.
    """
    if not path_str or not str(path_str).strip():
        raise InvalidConfigurationError("Directory: root path must not be empty.")
    try:
        resolved = Path(os.path.expanduser(path_str)).resolve()
    except (OSError, RuntimeError) as e:
        raise InvalidConfigurationError(f"Directory: {path_str} path is not valid ({e}).") from e

    if not is_full_path(str(resolved)):
        raise InvalidConfigurationError(f"Directory: {path_str} path is not valid.")
    if not resolved.exists():
        raise InvalidConfigurationError(f"Directory: {resolved} does not exist.")
    if not resolved.is_dir():
        raise InvalidConfigurationError(f"Directory: {resolved} is not a directory.")
    return str(resolved)


def _validate_extension_filter(ext: str) -> str:
    ext = str(ext).strip()
    if ext == MATCH_ALL:
        return ext
    if not check_file_extension(ext):
        raise InvalidConfigurationError(f"Extension: {ext} not valid.")
    return ext


def _validate_log_path(path_str: str) -> str:
    """Resolve the log file path and reject directories."""
    try:
        resolved = Path(os.path.expanduser(path_str)).resolve()
    except (OSError, RuntimeError) as e:
        raise InvalidConfigurationError(f"Error resolving log file path {path_str}: {e}") from e
    if resolved.exists() and not resolved.is_file():
        raise InvalidConfigurationError(f"Invalid path: Log file is not a regular file: {resolved}")
    return str(resolved)


def _to_float(values: Dict[str, Any], key: str) -> float:
    try:
        return float(values[key])
    except (TypeError, ValueError) as e:
        raise InvalidConfigurationError(f"Invalid float for {key}: {values[key]}") from e


def _to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in TRUE_STRINGS:
        return True
    if lowered in FALSE_STRINGS:
        return False
    raise InvalidConfigurationError(f"Invalid boolean for {key}: {value}")


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Aggregates configuration from multiple sources, resolving conflicts by
    prioritizing command-line arguments, then environment variables, then
    configuration files, and finally hardcoded defaults.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments, typically
            ``vars(parser.parse_args())``. Values of None are ignored so that
            lower-priority sources take effect. Unknown keys (e.g. ``debug``)
            are dropped.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        InvalidConfigurationError: If the root path is not an existing
            directory, the extension filter is malformed, a numeric value is
            invalid or out of range, or the log level is unknown.

    Examples:
        >>> import os, tempfile
        >>> root = tempfile.mkdtemp()
        >>> config = load_config({"root_path": root, "extension_filter": "*.log"})
        >>> config.extension_filter
        '*.log'
        >>> config.tick_interval
        10.0
    """
    # 1. Defaults
    config_values: Dict[str, Any] = dict(DEFAULTS)

    # 2. Config File
    config_values.update(_read_config_file())

    # 3. Environment Variables
    for env_var, config_key in ENV_MAP.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    config_values["tick_interval"] = _to_float(config_values, "tick_interval")
    if config_values["tick_interval"] <= 0:
        raise InvalidConfigurationError(
            f"tick_interval must be positive, got {config_values['tick_interval']}"
        )

    config_values["quiescence_window"] = _to_float(config_values, "quiescence_window")
    if config_values["quiescence_window"] < 0:
        raise InvalidConfigurationError(
            f"quiescence_window must be non-negative, got {config_values['quiescence_window']}"
        )

    config_values["recursive"] = _to_bool(config_values["recursive"], "recursive")

    root_path = config_values["root_path"]
    if root_path is None:
        logger.debug("No root path given, defaulting to the current directory")
        root_path = "."
    config_values["root_path"] = _validate_root_path(str(root_path))

    config_values["extension_filter"] = _validate_extension_filter(config_values["extension_filter"])

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_path(str(config_values["log_file"]))
    else:
        config_values["log_file"] = None

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    level = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, level, None), int):
        raise InvalidConfigurationError(f"Invalid log level: {config_values['log_level']}")
    config_values["log_level"] = level

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)

"""Configuration management for lib-publish-watcher.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every value before the
daemon starts. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``LIB_PUBLISH_WATCHER_WORKSPACE``: Directory the commands run in.
    * ``LIB_PUBLISH_WATCHER_WATCH_ROOTS``: Comma-separated source roots to watch.
    * ``LIB_PUBLISH_WATCHER_IGNORE_PATTERNS``: Comma-separated ignore rules.
    * ``LIB_PUBLISH_WATCHER_DEBOUNCE_SECONDS``: Quiet period before a rebuild.
    * ``LIB_PUBLISH_WATCHER_NATIVE_RECURSIVE``: One recursive watch per root (default) or, if false, one per directory.
    * ``LIB_PUBLISH_WATCHER_REGISTRY_COMMAND``: Command that serves the local registry.
    * ``LIB_PUBLISH_WATCHER_REGISTRY_URL``: Ping URL of the local registry.
    * ``LIB_PUBLISH_WATCHER_REGISTRY_MAX_ATTEMPTS``: Health check attempts before giving up.
    * ``LIB_PUBLISH_WATCHER_BUILD_COMMAND`` / ``_UNPUBLISH_COMMAND`` / ``_PUBLISH_COMMAND``.
    * ``LIB_PUBLISH_WATCHER_BUILD_CONFIGURATION``: Build configuration name.
    * ``LIB_PUBLISH_WATCHER_BUILD_TIMEOUT`` / ``_UNPUBLISH_TIMEOUT`` / ``_PUBLISH_TIMEOUT``.
    * ``LIB_PUBLISH_WATCHER_LOG_FILE``: Path to the log file.
    * ``LIB_PUBLISH_WATCHER_LOG_LEVEL``: Logging level.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from lib_publish_watcher.patterns import DEFAULT_IGNORE_PATTERNS

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

APP_NAME = "lib-publish-watcher"
ENV_PREFIX = "LIB_PUBLISH_WATCHER_"

DEFAULT_REGISTRY_URL = "http://localhost:4873/-/ping"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        workspace (str): Absolute path of the directory commands run in and
            watch roots are resolved against. Defaults to the git root.
        watch_roots (List[str]): Absolute source roots to watch. Defaults to ``libs``.
        ignore_patterns (List[str]): Literal or single-wildcard ignore rules.
        debounce_seconds (float): Quiet period before a rebuild. Defaults to 1.0.
        native_recursive (bool): Install one recursive watch per root instead of
            one watch per directory. Defaults to True.
        registry_command (str): Command serving the local registry.
        registry_url (str): Registry health check URL.
        registry_max_attempts (int): Health check attempts (one per second). Defaults to 30.
        build_command (str): Build command; the configuration flag is appended.
        build_configuration (str): Build configuration name. Defaults to "production".
        unpublish_command (str): Command removing published versions.
        publish_command (str): Command publishing fresh artifacts.
        build_timeout (float): Seconds before the build is killed. Defaults to 300.
        unpublish_timeout (float): Seconds before unpublish is killed. Defaults to 60.
        publish_timeout (float): Seconds before publish is killed. Defaults to 120.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level. Defaults to "INFO".
    """

    workspace: str
    watch_roots: List[str]
    ignore_patterns: List[str]
    debounce_seconds: float
    native_recursive: bool
    registry_command: str
    registry_url: str
    registry_max_attempts: int
    build_command: str
    build_configuration: str
    unpublish_command: str
    publish_command: str
    build_timeout: float
    unpublish_timeout: float
    publish_timeout: float
    log_file: Optional[str]
    log_level: str


def _find_project_root(start_path: Path) -> Optional[Path]:
    """Find the project root by looking for the .git directory upwards.

    Args:
        start_path (Path): The starting path for the search.

    Returns:
        Optional[Path]: The path to the project root if found, else None.
    """
    try:
        path = start_path.resolve()
        if path.is_file():
            path = path.parent

        for parent in [path] + list(path.parents):
            if (parent / ".git").exists():
                return parent
    except OSError:
        pass
    return None


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/lib-publish-watcher/config.ini` (Linux/macOS).
    3. `%APPDATA%\\lib-publish-watcher\\config.ini` (Windows).
    4. `~/.config/lib-publish-watcher/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), APP_NAME, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", APP_NAME, "config.ini"))
    return paths


def _validate_workspace(path_str: str) -> str:
    """Resolve the workspace directory, expanding the user tilde.

    Raises:
        ValueError: If the path does not exist or is not a directory.
    """
    try:
        resolved = Path(os.path.expanduser(path_str)).resolve(strict=True)
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ValueError(f"Workspace not found: {path_str}") from e
    if not resolved.is_dir():
        raise ValueError(f"Workspace is not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and verify it can be written.

    The parent directory is created if needed.

    Raises:
        ValueError: If the path is a directory or not writable.
    """
    resolved = Path(os.path.expanduser(path_str)).absolute()
    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _split_list(value: Any) -> List[str]:
    """Parse a comma-separated string (or a list) into stripped, non-empty items."""
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _to_float(name: str, value: Any, allow_zero: bool = False) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {name}: {value}") from e
    if number < 0 or (number == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{name} must be {qualifier}, got {number}")
    return number


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Priority Order (Highest to Lowest):
        1. CLI Arguments (passed via `args`)
        2. Environment Variables (``LIB_PUBLISH_WATCHER_*``)
        3. Config File (section ``[lib-publish-watcher]``)
        4. Hardcoded Defaults

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes. Values of None are ignored so
            lower-priority sources can take effect.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a numeric value is invalid, a command is empty, the log
            level is unknown, or the workspace / log file path is unusable.

    Examples:
        >>> config = load_config({"debounce_seconds": 0.5})
        >>> config.debounce_seconds
        0.5
        >>> config.registry_max_attempts
        30
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "workspace": None,
        "watch_roots": ["libs"],
        "ignore_patterns": list(DEFAULT_IGNORE_PATTERNS),
        "debounce_seconds": 1.0,
        "native_recursive": True,
        "registry_command": "npm run verdaccio",
        "registry_url": DEFAULT_REGISTRY_URL,
        "registry_max_attempts": 30,
        "build_command": "npm run build --",
        "build_configuration": "production",
        "unpublish_command": "npm run unpublish:local",
        "publish_command": "npm run publish:local",
        "build_timeout": 300.0,
        "unpublish_timeout": 60.0,
        "publish_timeout": 120.0,
        "log_file": None,
        "log_level": "INFO",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if APP_NAME in parser:
                    for key, value in parser[APP_NAME].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    for key in list(config_values):
        val = os.getenv(ENV_PREFIX + key.upper())
        if val is not None and val != "":
            config_values[key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    for name in ("debounce_seconds",):
        config_values[name] = _to_float(name, config_values[name], allow_zero=True)
    for name in ("build_timeout", "unpublish_timeout", "publish_timeout"):
        config_values[name] = _to_float(name, config_values[name])

    try:
        config_values["registry_max_attempts"] = int(config_values["registry_max_attempts"])
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Invalid integer for registry_max_attempts: {config_values['registry_max_attempts']}"
        ) from e
    if not (1 <= config_values["registry_max_attempts"] <= 3600):
        raise ValueError(
            f"registry_max_attempts must be between 1 and 3600, got {config_values['registry_max_attempts']}"
        )

    for name in ("registry_command", "build_command", "unpublish_command", "publish_command"):
        if not str(config_values[name] or "").strip():
            raise ValueError(f"{name} must not be empty")
        config_values[name] = str(config_values[name]).strip()

    config_values["native_recursive"] = _to_bool(config_values["native_recursive"])
    config_values["ignore_patterns"] = _split_list(config_values["ignore_patterns"])
    config_values["watch_roots"] = _split_list(config_values["watch_roots"])
    if not config_values["watch_roots"]:
        raise ValueError("At least one watch root is required")

    # Workspace defaults to the git root if available, else "."
    if config_values["workspace"]:
        workspace = _validate_workspace(str(config_values["workspace"]))
    else:
        try:
            root = _find_project_root(Path.cwd())
        except OSError:
            logger.debug("Could not determine CWD, defaulting workspace to '.'")
            root = None
        workspace = _validate_workspace(str(root) if root else ".")
    config_values["workspace"] = workspace

    # Watch roots are relative to the workspace; they may not exist yet
    config_values["watch_roots"] = [
        str((Path(workspace) / os.path.expanduser(root)).absolute())
        for root in config_values["watch_roots"]
    ]

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)

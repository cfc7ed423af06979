"""
Configuration loading.

Settings come from a YAML file (defaults when the file is missing),
``${VAR}`` references inside string values are expanded from the
environment, and a handful of environment variables override the file:

    NODEKEEPER_ENDPOINTS    comma-separated endpoint list
    NODEKEEPER_LOG_LEVEL    log level
    SUPERVISOR_COMMAND      child command line (shell-style quoting)
"""

import os
import re
import shlex
import signal
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog
import yaml

from nodekeeper.backoff import BackoffPolicy
from nodekeeper.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"

DEFAULT_ENDPOINTS = (
    "wss://xrplcluster.com",
    "wss://s1.ripple.com",
    "wss://s2.ripple.com",
)

# Memory diagnostics for the supervised child
DEFAULT_EXTRA_ENV = {"PYTHONTRACEMALLOC": "1"}

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class ConnectionSettings:
    """Connection manager settings."""
    endpoints: tuple[str, ...] = DEFAULT_ENDPOINTS
    services: tuple[str, ...] = ("default",)
    base_delay: float = 30.0
    factor: float = 1.5
    max_delay: float = 300.0
    cap_index: int = 5
    max_retries: int = 20
    open_timeout: float = 30.0
    heartbeat: Optional[float] = 30.0
    max_message_size: int = 5 * 1024 * 1024

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay,
            factor=self.factor,
            max_delay=self.max_delay,
            cap_index=self.cap_index,
        )


@dataclass(frozen=True)
class SupervisorSettings:
    """Process supervisor settings."""
    command: tuple[str, ...] = ()
    restart_delay: float = 5.0
    max_restarts: int = 10
    reset_window: float = 3600.0
    liveness_interval: float = 30.0
    kill_timeout: float = 5.0
    log_file: str = "watchdog.log"
    clean_exit_codes: tuple[int, ...] = (0,)
    clean_exit_signals: tuple[int, ...] = ()
    extra_env: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_EXTRA_ENV))
    cwd: Optional[str] = None

    def validate(self) -> None:
        """Raise ConfigurationError if the supervisor cannot run with these settings."""
        if not self.command or not self.command[0]:
            raise ConfigurationError("Supervisor requires a command (executable path) to launch")
        if self.restart_delay < 0:
            raise ConfigurationError(f"restart_delay must be >= 0, got {self.restart_delay}")
        if self.max_restarts < 1:
            raise ConfigurationError(f"max_restarts must be >= 1, got {self.max_restarts}")
        if self.reset_window <= 0:
            raise ConfigurationError(f"reset_window must be positive, got {self.reset_window}")
        if self.liveness_interval <= 0:
            raise ConfigurationError(
                f"liveness_interval must be positive, got {self.liveness_interval}"
            )


@dataclass(frozen=True)
class Settings:
    """Top-level settings."""
    environment: str = "production"
    log_level: str = "INFO"
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)


def load_settings(
    path: Optional[str] = DEFAULT_CONFIG_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from YAML plus environment overrides.

    Args:
        path: YAML file path; missing files fall back to defaults
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: unreadable file or invalid values
    """
    env = os.environ if environ is None else environ
    raw = _read_yaml(path) if path else {}
    raw = _expand_env_vars(raw, env)

    connection_raw = dict(raw.get("connection") or {})
    supervisor_raw = dict(raw.get("supervisor") or {})

    if env.get("NODEKEEPER_ENDPOINTS"):
        connection_raw["endpoints"] = [
            e.strip() for e in env["NODEKEEPER_ENDPOINTS"].split(",") if e.strip()
        ]
    if env.get("SUPERVISOR_COMMAND"):
        supervisor_raw["command"] = shlex.split(env["SUPERVISOR_COMMAND"])

    log_level = env.get("NODEKEEPER_LOG_LEVEL") or raw.get("log_level", "INFO")

    settings = Settings(
        environment=str(raw.get("environment", "production")),
        log_level=str(log_level).upper(),
        connection=_build_connection(connection_raw),
        supervisor=_build_supervisor(supervisor_raw),
    )

    # Validate eagerly so bad values fail at startup
    settings.connection.backoff()
    if not settings.connection.endpoints:
        raise ConfigurationError("connection.endpoints must not be empty")

    logger.info(
        "settings_loaded",
        path=path,
        environment=settings.environment,
        endpoints=len(settings.connection.endpoints),
    )
    return settings


def _read_yaml(path: str) -> dict:
    config_path = Path(path)

    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=path)
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must be a mapping at the top level")
    return data


def _expand_env_vars(value: Any, env: Mapping[str, str]) -> Any:
    """Expand ${VAR} references in strings, recursing into containers."""
    if isinstance(value, str) and "${" in value:
        return _ENV_PATTERN.sub(lambda m: env.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: _expand_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v, env) for v in value]
    return value


def _check_keys(section: str, raw: dict, cls) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning("unknown_config_keys", section=section, keys=unknown)
        for key in unknown:
            raw.pop(key)


def _build_connection(raw: dict) -> ConnectionSettings:
    _check_keys("connection", raw, ConnectionSettings)

    try:
        if "endpoints" in raw:
            endpoints = raw["endpoints"]
            if isinstance(endpoints, str):
                endpoints = [endpoints]
            raw["endpoints"] = tuple(str(e) for e in endpoints)
        if "services" in raw:
            services = raw["services"]
            if isinstance(services, str):
                services = [services]
            raw["services"] = tuple(str(s) for s in services)
        for key in ("base_delay", "factor", "max_delay", "open_timeout"):
            if key in raw:
                raw[key] = float(raw[key])
        for key in ("cap_index", "max_retries", "max_message_size"):
            if key in raw:
                raw[key] = int(raw[key])
        if raw.get("heartbeat") is not None:
            raw["heartbeat"] = float(raw["heartbeat"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid connection setting: {e}") from e

    return ConnectionSettings(**raw)


def _build_supervisor(raw: dict) -> SupervisorSettings:
    _check_keys("supervisor", raw, SupervisorSettings)

    try:
        if "command" in raw:
            command = raw["command"]
            if isinstance(command, str):
                command = shlex.split(command)
            raw["command"] = tuple(str(part) for part in command)
        for key in ("restart_delay", "reset_window", "liveness_interval", "kill_timeout"):
            if key in raw:
                raw[key] = float(raw[key])
        if "max_restarts" in raw:
            raw["max_restarts"] = int(raw["max_restarts"])
        if "clean_exit_codes" in raw:
            raw["clean_exit_codes"] = tuple(int(c) for c in raw["clean_exit_codes"])
        if "clean_exit_signals" in raw:
            raw["clean_exit_signals"] = tuple(
                _parse_signal(s) for s in raw["clean_exit_signals"]
            )
        if "extra_env" in raw:
            raw["extra_env"] = {
                **DEFAULT_EXTRA_ENV,
                **{str(k): str(v) for k, v in (raw["extra_env"] or {}).items()},
            }
        if "log_file" in raw:
            raw["log_file"] = str(raw["log_file"])
    except (TypeError, ValueError, KeyError) as e:
        raise ConfigurationError(f"Invalid supervisor setting: {e}") from e

    return SupervisorSettings(**raw)


def _parse_signal(value: Any) -> int:
    """Accept signal numbers or names ("SIGTERM", "TERM")."""
    if isinstance(value, int):
        return int(signal.Signals(value))
    name = str(value).upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    return int(signal.Signals[name])

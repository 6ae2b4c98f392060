"""
FLUXWARDEN — Shared Settings

Process-wide configuration, read once at startup.
Sources (lowest to highest precedence): defaults, settings.ini [General],
environment variables (after loading .env).
"""

from __future__ import annotations

import configparser
import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from fluxwarden.shared.errors import InvalidHostError


# =============================================================================
# Project Identity
# =============================================================================
PROJECT_NAME: str = "FLUXWARDEN"
VERSION: str = "1.0.0"


# =============================================================================
# Defaults
# =============================================================================
DEFAULT_SETTINGS_FILE: str = "settings.ini"
INI_SECTION: str = "General"

MIN_AUTOMATION_INTERVAL_SECONDS: int = 60
DEFAULT_AUTOMATION_INTERVAL_SECONDS: int = 60
DEFAULT_SETTLE_DELAY_SECONDS: float = 5.0
DEFAULT_REQUEST_TIMEOUT_SECONDS: float = 10.0
DEFAULT_AUTH_HEADER: str = "zelidauth"

DEFAULT_API_HOST: str = "127.0.0.1"
DEFAULT_API_PORT: int = 8770

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

logger = logging.getLogger("fluxwarden.settings")


@dataclass(frozen=True)
class Settings:
    """Immutable engine configuration."""

    scan_hosts: tuple[str, ...] = ()
    target_prefixes: tuple[str, ...] = ()
    automation_interval: int = DEFAULT_AUTOMATION_INTERVAL_SECONDS
    debug: bool = False
    log_level: str = "INFO"
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    settle_delay: float = DEFAULT_SETTLE_DELAY_SECONDS
    seal_credentials: bool = True
    auth_header: str = DEFAULT_AUTH_HEADER
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    warnings: tuple[str, ...] = field(default=(), compare=False)

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()


# =============================================================================
# Normalisation helpers
# =============================================================================
def split_list(raw: str | None) -> list[str]:
    """Split a comma separated value, trimming blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def is_valid_host(host: str) -> bool:
    """Accept IPv4/IPv6 literals and RFC 1123 hostnames."""
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    if len(host) > 253 or host.endswith("."):
        return False
    labels = host.split(".")
    if all(label.isdigit() for label in labels):
        # dotted numbers that failed ip parsing, e.g. 10.0.0.300
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in labels)


def validate_host(host: str) -> str:
    if not is_valid_host(host):
        raise InvalidHostError(host)
    return host


def normalize_hosts(raw_hosts: list[str], warnings: list[str]) -> tuple[str, ...]:
    """Drop malformed and duplicate hosts, preserving input order."""
    hosts: list[str] = []
    for host in raw_hosts:
        try:
            validate_host(host)
        except InvalidHostError as exc:
            warnings.append(f"Dropping malformed scan host: {exc.host!r}")
            continue
        if host in hosts:
            warnings.append(f"Dropping duplicate scan host: {host}")
            continue
        hosts.append(host)
    return tuple(hosts)


def clamp_interval(raw: str | int | None, warnings: list[str]) -> int:
    """
    Resolve the automation interval in seconds.

    Non-numeric input falls back to the default; anything below the floor
    is raised to the floor.
    """
    if raw is None or str(raw).strip() == "":
        return DEFAULT_AUTOMATION_INTERVAL_SECONDS
    try:
        value = int(str(raw).strip())
    except ValueError:
        warnings.append(
            f"Invalid automation interval {raw!r}; using {DEFAULT_AUTOMATION_INTERVAL_SECONDS}s"
        )
        return DEFAULT_AUTOMATION_INTERVAL_SECONDS
    if value < MIN_AUTOMATION_INTERVAL_SECONDS:
        warnings.append(
            f"Automation interval {value}s is below the {MIN_AUTOMATION_INTERVAL_SECONDS}s "
            f"minimum; using {MIN_AUTOMATION_INTERVAL_SECONDS}s"
        )
        return MIN_AUTOMATION_INTERVAL_SECONDS
    return value


def _parse_float(raw: str | None, default: float, name: str, warnings: list[str]) -> float:
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        warnings.append(f"Invalid {name} {raw!r}; using {default}")
        return default
    if value < 0:
        warnings.append(f"Negative {name} {raw!r}; using {default}")
        return default
    return value


def _parse_port(raw: str | None, warnings: list[str]) -> int:
    if raw is None or str(raw).strip() == "":
        return DEFAULT_API_PORT
    try:
        port = int(raw)
    except ValueError:
        port = -1
    if not 0 < port < 65536:
        warnings.append(f"Invalid API port {raw!r}; using {DEFAULT_API_PORT}")
        return DEFAULT_API_PORT
    return port


def read_ini(path: Path) -> dict[str, str]:
    """Read the [General] section of settings.ini; missing file yields {}."""
    if not path.is_file():
        return {}
    parser = configparser.ConfigParser()
    parser.optionxform = str  # keep original key case (ScanIP, Debug, ...)
    parser.read(path, encoding="utf-8")
    if not parser.has_section(INI_SECTION):
        return {}
    return dict(parser.items(INI_SECTION))


# =============================================================================
# Loader
# =============================================================================
def load_settings(
    settings_file: str | Path | None = None,
    env: dict[str, str] | None = None,
    load_env_file: bool = True,
) -> Settings:
    """
    Build Settings from settings.ini and the environment.

    Args:
        settings_file: Path to the ini file (default: FLUXWARDEN_SETTINGS_FILE or settings.ini)
        env: Environment mapping (default: os.environ)
        load_env_file: Load a .env file into os.environ first

    Returns:
        Settings instance; configuration problems are recorded in
        ``Settings.warnings`` and never raised.
    """
    if load_env_file and env is None:
        load_dotenv()
    env = dict(os.environ) if env is None else env

    path = Path(settings_file or env.get("FLUXWARDEN_SETTINGS_FILE", DEFAULT_SETTINGS_FILE))
    ini = read_ini(path)
    warnings: list[str] = []

    # Blank environment values fall through to the ini file.
    raw_hosts = env.get("FLUXWARDEN_SCAN_HOSTS") or ini.get("ScanIP")
    raw_prefixes = env.get("FLUXWARDEN_TARGET_PREFIXES") or ini.get("TargetAppPrefixes")
    raw_interval = env.get("FLUXWARDEN_AUTOMATION_INTERVAL") or ini.get("AutomationIntervalSeconds")
    raw_debug = env.get("FLUXWARDEN_DEBUG") or ini.get("Debug")

    settings = Settings(
        scan_hosts=normalize_hosts(split_list(raw_hosts), warnings),
        target_prefixes=tuple(split_list(raw_prefixes)),
        automation_interval=clamp_interval(raw_interval, warnings),
        debug=parse_bool(raw_debug),
        log_level=env.get("FLUXWARDEN_LOG_LEVEL", "INFO"),
        request_timeout=_parse_float(
            env.get("FLUXWARDEN_REQUEST_TIMEOUT"),
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
            "request timeout",
            warnings,
        ),
        settle_delay=_parse_float(
            env.get("FLUXWARDEN_SETTLE_DELAY"),
            DEFAULT_SETTLE_DELAY_SECONDS,
            "settle delay",
            warnings,
        ),
        seal_credentials=parse_bool(env.get("FLUXWARDEN_SEAL_CREDENTIALS"), default=True),
        auth_header=env.get("FLUXWARDEN_AUTH_HEADER", DEFAULT_AUTH_HEADER) or DEFAULT_AUTH_HEADER,
        api_host=env.get("FLUXWARDEN_API_HOST", DEFAULT_API_HOST),
        api_port=_parse_port(env.get("FLUXWARDEN_API_PORT"), warnings),
        warnings=tuple(warnings),
    )

    for message in settings.warnings:
        logger.warning(message)
    if not settings.target_prefixes:
        logger.warning("No target prefixes configured; automation will never remove anything")

    return settings

"""Config loading for keyrelay.

Reads `.keyrelay/config.yaml` (or `~/.keyrelay/config.yaml`), then applies
environment variable overrides. The result is a frozen :class:`Config` that is
built once at startup and shared read-only by every request.

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. KEYRELAY_CONFIG environment variable (if set)
  3. `.keyrelay/config.yaml` (working directory — for development)
  4. `~/.keyrelay/config.yaml` (home directory — for production deployments)

Environment variable overrides (always win over the file):
  KEYRELAY_PROXY_SECRET       — proxy.secret
  KEYRELAY_UPSTREAM_KEYS      — upstream.keys (comma-separated)
  KEYRELAY_UPSTREAM_BASE_URL  — upstream.base_url
  KEYRELAY_UPSTREAM_TIMEOUT   — upstream.timeout_s (float seconds)
  KEYRELAY_HOST / KEYRELAY_PORT — proxy.host / proxy.port

A malformed file or unparseable override aborts startup with SystemExit(1).
A *missing* secret or key list does not: the server starts, logs the problem,
and answers every proxied request with HTTP 500 until it is fixed
(see :meth:`Config.missing_fields`).
"""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from keyrelay.constants import DEFAULT_UPSTREAM_BASE_URL, DEFAULT_UPSTREAM_TIMEOUT_S
from keyrelay.keys.pool import split_keys
from keyrelay.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (KEYRELAY_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".keyrelay/config.yaml",
    os.path.expanduser("~/.keyrelay/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream API configuration.

    base_url:  Upstream root, may end in an API-version segment ("/v1").
    keys:      Upstream credentials, in configured order.
    timeout_s: Deadline for one upstream round trip.
    """

    base_url: str = DEFAULT_UPSTREAM_BASE_URL
    keys: tuple[str, ...] = ()
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S


@dataclass(frozen=True)
class ProxyConfig:
    """Inbound side: binding and the shared secret clients must present."""

    host: str = "127.0.0.1"
    port: int = 8787
    secret: Optional[str] = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass(frozen=True)
class Config:
    """Root configuration object.

    All fields have defaults so keyrelay can start without a config file; the
    two required values (``proxy.secret`` and ``upstream.keys``) are reported
    by :meth:`missing_fields` rather than enforced at construction.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    path: Optional[str] = None  # Path to the loaded config file, if any

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.
        ``upstream.keys`` may be a YAML list or a comma-separated string; either
        way it is split, trimmed and emptied entries are dropped.
        """
        proxy_raw = raw.get("proxy") or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", "127.0.0.1"),
            port=proxy_raw.get("port", 8787),
            secret=_clean_secret(proxy_raw.get("secret")),
        )

        upstream_raw = raw.get("upstream") or {}
        upstream = UpstreamConfig(
            base_url=upstream_raw.get("base_url", DEFAULT_UPSTREAM_BASE_URL),
            keys=_coerce_keys(upstream_raw.get("keys")),
            timeout_s=float(upstream_raw.get("timeout_s", DEFAULT_UPSTREAM_TIMEOUT_S)),
        )

        logging_raw = raw.get("logging") or {}
        logging_config = LoggingConfig(
            level=str(logging_raw.get("level", "INFO")),
            json=bool(logging_raw.get("json", True)),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            proxy=proxy,
            upstream=upstream,
            logging=logging_config,
            path=path,
        )

    def missing_fields(self) -> list[str]:
        """Return the dotted names of required fields that are unset.

        An empty list means the config is usable. The names (never the values)
        are safe to include in a client-facing diagnostic.
        """
        missing: list[str] = []
        if not self.proxy.secret:
            missing.append("proxy.secret")
        if not self.upstream.keys:
            missing.append("upstream.keys")
        return missing

    @property
    def is_valid(self) -> bool:
        return not self.missing_fields()


def _clean_secret(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_keys(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(split_keys(value))
    if isinstance(value, (list, tuple)):
        return tuple(k for k in (str(v).strip() for v in value if v is not None) if k)
    _fatal(
        "CONFIG ERROR: upstream.keys must be a list or a comma-separated string, "
        f"got {type(value).__name__}."
    )


def _fatal(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate keyrelay configuration.

    If no file is found at any search path, defaults are used (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, non-mapping document, missing or
                       unsupported ``version``, or an unparseable env override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYRELAY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        return _apply_env_overrides(Config.defaults())

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fatal(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "keyrelay refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fatal(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fatal(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fatal(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fatal(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fatal(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = _apply_env_overrides(Config.from_dict(raw, path=found_path))

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "keyrelay is configured to bind on 0.0.0.0 (all interfaces); "
            "anyone who can reach the port can attempt the proxy secret"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        upstream_base_url=config.upstream.base_url,
    )
    return config


def _apply_env_overrides(config: Config) -> Config:
    """Return a copy of ``config`` with environment variable overrides applied.

    Raises:
        SystemExit(1): If KEYRELAY_PORT or KEYRELAY_UPSTREAM_TIMEOUT is not numeric.
    """
    proxy_changes: dict[str, Any] = {}
    upstream_changes: dict[str, Any] = {}

    env_secret = os.environ.get("KEYRELAY_PROXY_SECRET")
    if env_secret is not None:
        proxy_changes["secret"] = _clean_secret(env_secret)

    env_host = os.environ.get("KEYRELAY_HOST")
    if env_host:
        proxy_changes["host"] = env_host

    env_port = os.environ.get("KEYRELAY_PORT")
    if env_port is not None:
        try:
            proxy_changes["port"] = int(env_port)
        except ValueError:
            _fatal(
                "CONFIG ERROR: KEYRELAY_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    env_keys = os.environ.get("KEYRELAY_UPSTREAM_KEYS")
    if env_keys is not None:
        upstream_changes["keys"] = tuple(split_keys(env_keys))

    env_base = os.environ.get("KEYRELAY_UPSTREAM_BASE_URL")
    if env_base:
        upstream_changes["base_url"] = env_base

    env_timeout = os.environ.get("KEYRELAY_UPSTREAM_TIMEOUT")
    if env_timeout is not None:
        try:
            upstream_changes["timeout_s"] = float(env_timeout)
        except ValueError:
            _fatal(
                "CONFIG ERROR: KEYRELAY_UPSTREAM_TIMEOUT environment variable is not "
                f"a number: '{env_timeout}'"
            )

    if not proxy_changes and not upstream_changes:
        return config

    return dataclasses.replace(
        config,
        proxy=dataclasses.replace(config.proxy, **proxy_changes),
        upstream=dataclasses.replace(config.upstream, **upstream_changes),
    )

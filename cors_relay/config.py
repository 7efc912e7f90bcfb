import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from cors_relay.vars import (
    DEFAULT_BACKEND_URL,
    DEFAULT_BIND_ADDR,
    DEFAULT_CERT_PATH,
    DEFAULT_CORS_HEADERS,
    DEFAULT_CORS_MAX_AGE,
    DEFAULT_CORS_METHODS,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_KEY_PATH,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PROXY_TIMEOUT,
    DEFAULT_SHUTDOWN_GRACE,
)
from cors_relay.errors import ConfigError

LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def parse_bind_addr(raw: str) -> Tuple[str, int]:
    """
    Parse a ``host:port`` bind address. IPv6 hosts must be bracketed,
    e.g. ``[::1]:8000``.
    """
    raw = raw.strip()
    if raw.startswith("["):
        host, sep, port = raw[1:].partition("]:")
    else:
        host, sep, port = raw.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"Failed to parse BIND_ADDR: {raw!r}")
    port_number = int(port)
    if port_number > 65535:
        raise ConfigError(f"Failed to parse BIND_ADDR: port out of range in {raw!r}")
    return host, port_number


def parse_backend_url(raw: str) -> str:
    parsed = urlsplit(raw.strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"BACKEND_URL must be an absolute http(s) URL, got {raw!r}")
    if parsed.query or parsed.fragment:
        raise ConfigError(f"BACKEND_URL must not carry a query or fragment: {raw!r}")
    return raw.strip().rstrip("/")


def _parse_seconds(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class ProxyConfig:
    """
    Immutable relay settings, built once at startup and shared read-only by
    every connection.
    """

    bind_host: str = "127.0.0.1"
    bind_port: int = 8000
    backend_url: str = DEFAULT_BACKEND_URL
    use_tls: bool = True
    cert_path: str = DEFAULT_CERT_PATH
    key_path: str = DEFAULT_KEY_PATH
    log_level: str = DEFAULT_LOG_LEVEL
    upstream_timeout: float = 30.0
    idle_timeout: float = 60.0
    shutdown_grace: float = 30.0
    cors_max_age: int = 86400
    allowed_origins: Tuple[str, ...] = ()
    default_allow_methods: Tuple[str, ...] = _split_list(DEFAULT_CORS_METHODS)
    default_allow_headers: Tuple[str, ...] = _split_list(DEFAULT_CORS_HEADERS)

    @property
    def bind_addr(self) -> str:
        if ":" in self.bind_host:
            return f"[{self.bind_host}]:{self.bind_port}"
        return f"{self.bind_host}:{self.bind_port}"

    @property
    def public_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://{self.bind_addr}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ

        bind_host, bind_port = parse_bind_addr(
            env.get("BIND_ADDR", DEFAULT_BIND_ADDR)
        )
        backend_url = parse_backend_url(
            env.get("BACKEND_URL", DEFAULT_BACKEND_URL)
        )

        # Anything but an explicit "false" keeps TLS on
        use_tls = env.get("USE_TLS", "true").strip().lower() != "false"

        log_level = env.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().lower()
        if log_level not in LOG_LEVELS:
            raise ConfigError(
                f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}"
            )

        max_age_raw = env.get("CORS_MAX_AGE", DEFAULT_CORS_MAX_AGE).strip()
        if not max_age_raw.isdigit():
            raise ConfigError(
                f"CORS_MAX_AGE must be a non-negative integer, got {max_age_raw!r}"
            )

        return cls(
            bind_host=bind_host,
            bind_port=bind_port,
            backend_url=backend_url,
            use_tls=use_tls,
            cert_path=env.get("CERT_PATH", DEFAULT_CERT_PATH),
            key_path=env.get("KEY_PATH", DEFAULT_KEY_PATH),
            log_level=log_level,
            upstream_timeout=_parse_seconds(
                "PROXY_TIMEOUT", env.get("PROXY_TIMEOUT", DEFAULT_PROXY_TIMEOUT)
            ),
            idle_timeout=_parse_seconds(
                "IDLE_TIMEOUT", env.get("IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT)
            ),
            shutdown_grace=_parse_seconds(
                "SHUTDOWN_GRACE",
                env.get("SHUTDOWN_GRACE", DEFAULT_SHUTDOWN_GRACE),
            ),
            cors_max_age=int(max_age_raw),
            allowed_origins=_split_list(env.get("CORS_ALLOWED_ORIGINS", "")),
            default_allow_methods=_split_list(
                env.get("CORS_DEFAULT_METHODS", DEFAULT_CORS_METHODS)
            ),
            default_allow_headers=_split_list(
                env.get("CORS_DEFAULT_HEADERS", DEFAULT_CORS_HEADERS)
            ),
        )

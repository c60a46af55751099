"""
selfsigned-mqtt configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/selfsigned-mqtt/selfsigned-mqtt.env (system install)
2) ~/.config/selfsigned-mqtt/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import enum
import os
import socket
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Union

from dotenv import load_dotenv

from selfsigned_mqtt.errors import UnsupportedProtocolError

DEFAULT_TLS_PORT = 8883
DEFAULT_KEEPALIVE_S = 60
DEFAULT_CONNECT_TIMEOUT_S = 60
URI_SCHEME = "tls"


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


class TlsProtocol(str, enum.Enum):
    """TLS protocol names accepted for the broker endpoint."""

    TLS = "TLS"
    TLS_1_1 = "TLSv1.1"
    TLS_1_2 = "TLSv1.2"
    TLS_1_3 = "TLSv1.3"

    @classmethod
    def parse(cls, value: Union[str, "TlsProtocol"]) -> "TlsProtocol":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip())
        except ValueError as exc:
            supported = ", ".join(p.value for p in cls)
            raise UnsupportedProtocolError(
                f"Unsupported TLS protocol {value!r}; supported: {supported}"
            ) from exc


@dataclass(frozen=True, slots=True)
class BrokerEndpointConfig:
    """
    Where the broker lives and which CA signed its certificate.

    ca_certificate holds the raw PEM or DER bytes; it is parsed (and rejected
    if it is not exactly one certificate) when the TLS factory is built.
    """

    host: str
    port: int = DEFAULT_TLS_PORT
    protocol: TlsProtocol = TlsProtocol.TLS
    ca_certificate: bytes = field(default=b"", repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host.strip():
            raise ConfigError("Broker host must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(f"Broker port must be an integer: {self.port!r}")
        if not (1 <= self.port <= 65535):
            raise ConfigError(f"Broker port out of range: {self.port}")
        object.__setattr__(self, "protocol", TlsProtocol.parse(self.protocol))
        object.__setattr__(self, "ca_certificate", bytes(self.ca_certificate))

    @property
    def uri(self) -> str:
        return f"{URI_SCHEME}://{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    endpoint: BrokerEndpointConfig
    client_id: str
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    keepalive_s: int = DEFAULT_KEEPALIVE_S
    connect_timeout_s: int = DEFAULT_CONNECT_TIMEOUT_S
    subscriptions: tuple[str, ...] = ()
    reconnect_delay_s: int = 0  # 0 disables host-level reconnect


def package_version() -> str:
    try:
        return _pkg_version("selfsigned-mqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/selfsigned-mqtt/selfsigned-mqtt.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "selfsigned-mqtt" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _positive_int(key: str, default: int) -> int:
    value = _parse_int(key, os.getenv(key, str(default)))
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _split_topics(raw: str) -> tuple[str, ...]:
    return tuple(t.strip() for t in raw.split(",") if t.strip())


def read_ca_certificate(path: Union[str, Path]) -> bytes:
    p = Path(path).expanduser()
    try:
        return p.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Cannot read CA certificate {p}: {exc}") from exc


def load_config(*, dotenv_enabled: bool = True) -> ServiceConfig:
    """
    Load config by reading env files and then validating environment variables.

    Returns an immutable ServiceConfig. Raises ConfigError on failure and
    UnsupportedProtocolError for an unknown BROKER_TLS_PROTOCOL.
    """
    if dotenv_enabled:
        # highest priority first; override=False lets earlier sources win
        for p in reversed(list(_env_paths())):
            if p.is_file():
                load_dotenv(p, override=False)

    host = _require_env("BROKER_HOST")
    port = _parse_int("BROKER_PORT", os.getenv("BROKER_PORT", str(DEFAULT_TLS_PORT)))
    if not (1 <= port <= 65535):
        raise ConfigError(f"BROKER_PORT out of range: {port}")

    protocol = TlsProtocol.parse(os.getenv("BROKER_TLS_PROTOCOL", TlsProtocol.TLS.value))
    ca_bytes = read_ca_certificate(_require_env("BROKER_CA_CERT"))

    endpoint = BrokerEndpointConfig(
        host=host,
        port=port,
        protocol=protocol,
        ca_certificate=ca_bytes,
    )

    reconnect_delay_s = _parse_int("MQTT_RECONNECT_DELAY", os.getenv("MQTT_RECONNECT_DELAY", "0"))
    if reconnect_delay_s < 0:
        raise ConfigError("MQTT_RECONNECT_DELAY must be >= 0 (0 disables)")

    return ServiceConfig(
        endpoint=endpoint,
        client_id=os.getenv("MQTT_CLIENT_ID") or f"selfsigned-mqtt.{socket.gethostname()}",
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        keepalive_s=_positive_int("MQTT_KEEPALIVE", DEFAULT_KEEPALIVE_S),
        connect_timeout_s=_positive_int("MQTT_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_S),
        subscriptions=_split_topics(os.getenv("MQTT_SUBSCRIBE", "")),
        reconnect_delay_s=reconnect_delay_s,
    )

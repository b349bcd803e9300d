"""
Simulator configuration.

Values are resolved from the dataclass defaults, then environment variables
prefixed with ``MQTT_`` or ``mqtt.``, then positional ``key=value`` command
line arguments. Keys are matched case-insensitively and underscores are
ignored, so ``bindPortStart``, ``bind_port_start`` and ``MQTT_BIND_PORT_START``
all name the same setting.
"""

import dataclasses
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIXES = ("mqtt.", "MQTT_")
DEFAULT_SCRIPT_FILE = "./scripts/handler.py"
MASKED_KEYS = {"p12_password", "secure_key"}


def _default_threads() -> int:
    return (os.cpu_count() or 1) * 2


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [item.strip() for item in str(value).split(",") if item.strip()]


@dataclass
class PoolConfig:
    """Sizing of the transport worker group and the scheduled-task pool."""

    io_threads: int = field(default_factory=_default_threads)
    scheduler_threads: int = field(default_factory=_default_threads)


@dataclass
class SimulatorConfig:
    prefix: str = "test"
    address: str = "127.0.0.1"
    port: int = 1883
    start: int = 0
    limit: int = 100

    # Event push
    enable_event: bool = field(default=False, metadata={"parse": parse_bool})
    event_limit: int = 10
    event_rate: int = 10000  # milliseconds

    script_file: str = DEFAULT_SCRIPT_FILE

    # Outbound interface spreading
    binds: List[str] = field(default_factory=list, metadata={"parse": parse_list})
    bind_port_start: int = 10000

    # Mutual TLS
    ssl: bool = field(default=False, metadata={"parse": parse_bool})
    p12_path: str = "./ssl/client.p12"
    p12_password: str = "jetlinks"
    cer_path: str = "./ssl/server.cer"

    # Default credential scheme: secureId|timestamp, md5(secureId|timestamp|secureKey)
    secure_id: str = "test"
    secure_key: str = "test"

    # Transport
    keep_alive: int = 60
    retry_interval: float = 5.0
    connect_wait: float = 2.0
    failure_threshold: int = 5
    qos: int = 0

    io_threads: int = field(default_factory=_default_threads)
    scheduler_threads: int = field(default_factory=_default_threads)

    @property
    def pools(self) -> PoolConfig:
        return PoolConfig(io_threads=self.io_threads, scheduler_threads=self.scheduler_threads)

    def validate(self):
        """Raise ConfigError for settings the simulator cannot start with."""
        if self.limit < 0:
            raise ConfigError(f"limit must not be negative, got {self.limit}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if self.event_rate <= 0:
            raise ConfigError("eventRate must be greater than 0")
        if self.qos not in (0, 1, 2):
            raise ConfigError(f"qos must be 0, 1 or 2, got {self.qos}")
        if self.failure_threshold <= 0:
            raise ConfigError("failureThreshold must be greater than 0")
        if self.io_threads <= 0 or self.scheduler_threads <= 0:
            raise ConfigError("thread pool sizes must be greater than 0")
        if self.ssl:
            if not self.p12_path:
                raise ConfigError("p12Path is required when ssl is enabled")
            if not self.cer_path:
                raise ConfigError("cerPath is required when ssl is enabled")

    def as_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        if mask_secrets:
            for key in MASKED_KEYS:
                if data.get(key):
                    data[key] = "******"
        return data


def _normalize(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


_FIELDS = {_normalize(f.name): f for f in dataclasses.fields(SimulatorConfig)}


def _coerce(config_field: dataclasses.Field, raw: Any) -> Any:
    parser = config_field.metadata.get("parse")
    if parser is not None:
        return parser(raw)
    if config_field.type is int:
        return int(raw)
    if config_field.type is float:
        return float(raw)
    return str(raw)


def _strip_prefix(key: str) -> Optional[str]:
    for prefix in ENV_PREFIXES:
        if key.startswith(prefix):
            return key[len(prefix):]
    return None


def parse_overrides(args: Iterable[str]) -> Dict[str, Any]:
    """Turn positional ``key=value`` arguments into a mapping; a bare key means True."""
    overrides: Dict[str, Any] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        key = _strip_prefix(key) or key
        overrides[key] = value if sep else True
    return overrides


def load_config(environ: Optional[Mapping[str, str]] = None,
                args: Iterable[str] = ()) -> SimulatorConfig:
    """
    Build a SimulatorConfig from environment variables and CLI overrides.

    Args:
        environ: Environment mapping (defaults to os.environ)
        args: Positional key=value arguments; they override the environment

    Returns:
        Validated SimulatorConfig
    """
    if environ is None:
        environ = os.environ

    raw: Dict[str, Any] = {}
    for key, value in environ.items():
        stripped = _strip_prefix(key)
        if stripped:
            raw[stripped] = value
    raw.update(parse_overrides(args))

    values: Dict[str, Any] = {}
    for key, value in raw.items():
        config_field = _FIELDS.get(_normalize(key))
        if config_field is None:
            logger.debug(f"Ignoring unknown configuration key: {key}")
            continue
        if value is True and config_field.metadata.get("parse") is not parse_bool:
            raise ConfigError(f"{key} needs a value ({key}=...); only flags may be given bare")
        try:
            values[config_field.name] = _coerce(config_field, value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e

    config = SimulatorConfig(**values)
    config.validate()
    return config


def _load_certificate(data: bytes) -> x509.Certificate:
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def build_ssl_context(config: SimulatorConfig) -> Optional[ssl.SSLContext]:
    """
    Build the mutual-TLS client context from a PKCS#12 bundle and a server certificate.

    Returns:
        SSLContext, or None when ssl is disabled

    Raises:
        ConfigError: when the key material is missing or unreadable
    """
    if not config.ssl:
        return None
    if not config.p12_path or not config.cer_path:
        raise ConfigError("p12Path and cerPath are required when ssl is enabled")

    password = config.p12_password.encode() if config.p12_password else None
    try:
        key, certificate, chain = pkcs12.load_key_and_certificates(
            Path(config.p12_path).read_bytes(), password)
        server_certificate = _load_certificate(Path(config.cer_path).read_bytes())
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load TLS material: {e}") from e
    if key is None or certificate is None:
        raise ConfigError(f"{config.p12_path} does not contain a private key and certificate")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    # Peers are addressed by IP during load tests; only the certificate is pinned.
    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(
        cadata=server_certificate.public_bytes(serialization.Encoding.PEM).decode())

    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    pem += certificate.public_bytes(serialization.Encoding.PEM)
    for extra in chain or ():
        pem += extra.public_bytes(serialization.Encoding.PEM)

    # load_cert_chain only reads from the filesystem
    with tempfile.TemporaryDirectory() as tmp:
        bundle = Path(tmp) / "client.pem"
        bundle.write_bytes(pem)
        context.load_cert_chain(str(bundle))

    logger.info(f"Mutual TLS enabled with client bundle {config.p12_path}")
    return context

"""
Configuration for the certificate generator.

Settings can be loaded from a YAML file, from SELF_SIGNER_* environment
variables, or built directly. Durations use the Go duration syntax that the
CockroachDB chart exposes ("8760h", "1h30m", "90s").
"""

import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .error_handling import (
    ConfigParseError,
    validate_dns_label,
    validate_dns_subdomain,
    validate_key_size,
    validate_secret_name,
)

ENV_PREFIX = "SELF_SIGNER_"
CONFIG_PATH_ENV = "SELF_SIGNER_CONFIG_PATH"

DEFAULT_KEY_SIZE = 2048
DEFAULT_CLUSTER_DOMAIN = "cluster.local"
DEFAULT_CLIENT_USER = "root"

_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_MICROS = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "µs": Decimal(1),
    "μs": Decimal(1),
    "ms": Decimal(1_000),
    "s": Decimal(1_000_000),
    "m": Decimal(60_000_000),
    "h": Decimal(3_600_000_000),
}

# Largest duration Go accepts: int64 nanoseconds, about 2562047h
_MAX_DURATION_MICROS = Decimal(2**63 - 1) / 1_000
MAX_DURATION = timedelta(microseconds=int(_MAX_DURATION_MICROS))

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string.

    Args:
        value: Duration such as "672h", "1h30m" or "1.5s"

    Returns:
        The duration as a timedelta (microsecond resolution)

    Raises:
        ConfigParseError: If the string is not a valid duration
    """
    if not isinstance(value, str):
        raise ConfigParseError(f"invalid duration {value!r}: expected a string such as '8760h'")

    text = value.strip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigParseError(f"invalid duration {value!r}: empty value")

    total = Decimal(0)
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if not match:
            raise ConfigParseError(
                f"invalid duration {value!r}: expected numbers with units "
                "(h, m, s, ms, us, ns), e.g. '8760h' or '1h30m'"
            )
        try:
            total += Decimal(match.group(1)) * _UNIT_MICROS[match.group(2)]
        except InvalidOperation as e:
            raise ConfigParseError(f"invalid duration {value!r}: {e}") from e
        pos = match.end()
        if total > _MAX_DURATION_MICROS:
            raise ConfigParseError(f"invalid duration {value!r}: longer than the maximum of 2562047h")

    try:
        return timedelta(microseconds=int(sign * total.to_integral_value()))
    except OverflowError as e:
        raise ConfigParseError(f"invalid duration {value!r}: {e}") from e


def format_duration(value: timedelta) -> str:
    """Format a timedelta the way Go's time.Duration.String() does.

    Examples: 672h0m0s, 1m30s, 1.5s, 250ms.
    """
    micros = (value.days * 86_400 + value.seconds) * 1_000_000 + value.microseconds
    if micros == 0:
        return "0s"

    sign = "-" if micros < 0 else ""
    micros = abs(micros)

    if micros < 1_000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_with_fraction(micros // 1_000, micros % 1_000, 3)}ms"

    seconds, fraction = divmod(micros, 1_000_000)
    hours, rest = divmod(seconds, 3_600)
    minutes, secs = divmod(rest, 60)
    text = f"{_with_fraction(secs, fraction, 6)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{text}"
    if minutes:
        return f"{sign}{minutes}m{text}"
    return f"{sign}{text}"


def _with_fraction(whole: int, fraction: int, digits: int) -> str:
    if not fraction:
        return str(whole)
    return f"{whole}.{str(fraction).rjust(digits, '0').rstrip('0')}"


class SecretRole(Enum):
    """The three certificate roles, in the order they are provisioned."""
    CA = "CA"
    NODE = "Node"
    CLIENT = "Client"

    @property
    def key(self) -> str:
        """Lower-case form used in secret names and config keys."""
        return self.name.lower()


@dataclass(frozen=True)
class CertConfig:
    """Validity settings for one certificate role.

    Attributes:
        duration: Lifetime of newly issued certificates
        expiry_window: Renewal buffer before expiry; a certificate is reissued
            once it is inside this window
    """
    duration: timedelta
    expiry_window: timedelta

    def __post_init__(self):
        if self.duration <= timedelta(0):
            raise ConfigParseError(f"certificate duration must be positive, got {format_duration(self.duration)}")
        if self.duration > MAX_DURATION:
            raise ConfigParseError(f"certificate duration must not exceed {format_duration(MAX_DURATION)}")
        if self.expiry_window <= timedelta(0):
            raise ConfigParseError(
                f"certificate expiry window must be positive, got {format_duration(self.expiry_window)}"
            )
        if self.expiry_window >= self.duration:
            raise ConfigParseError(
                f"expiry window {format_duration(self.expiry_window)} must be shorter than the "
                f"duration {format_duration(self.duration)}, otherwise every new certificate is due for renewal"
            )

    @classmethod
    def parse(cls, duration: str, expiry_window: str) -> "CertConfig":
        """Build a CertConfig from Go-style duration strings."""
        return cls(
            duration=parse_duration(duration),
            expiry_window=parse_duration(expiry_window),
        )

    def duration_string(self) -> str:
        """Canonical duration string recorded in secret annotations."""
        return format_duration(self.duration)


DEFAULT_CA_CONFIG = CertConfig.parse("43800h", "648h")
DEFAULT_NODE_CONFIG = CertConfig.parse("8760h", "168h")
DEFAULT_CLIENT_CONFIG = CertConfig.parse("672h", "48h")

# Config file keys, normalised to lower-case with dashes
_SCALAR_KEYS = {
    "public-service": "public_service_name",
    "public-service-name": "public_service_name",
    "discovery-service": "discovery_service_name",
    "discovery-service-name": "discovery_service_name",
    "cluster-domain": "cluster_domain",
    "key-size": "key_size",
    "ca-secret": "ca_secret",
    "allow-ca-key-reuse": "allow_ca_key_reuse",
    "overwrite-files": "overwrite_files",
    "pkcs8-client-key": "pkcs8_client_key",
    "client-user": "client_user",
}
_BOOL_FIELDS = {"allow_ca_key_reuse", "overwrite_files", "pkcs8_client_key"}
_ENV_KEYS = list(_SCALAR_KEYS) + [
    f"{role.key}-{suffix}" for role in SecretRole for suffix in ("duration", "expiry")
]


@dataclass(frozen=True)
class SignerConfig:
    """Immutable settings for a certificate generation run.

    Attributes:
        public_service_name: Name of the cluster's public (load-balanced) service
        discovery_service_name: Name of the headless discovery service; also
            the prefix of every secret name
        cluster_domain: Kubernetes cluster DNS domain
        key_size: RSA key size for every generated key
        ca: Validity settings for the CA certificate
        node: Validity settings for the node certificate
        client: Validity settings for the client certificate
        ca_secret: Name of a user-managed CA secret; disables CA generation
        allow_ca_key_reuse: Keep the stored CA key when the CA is re-signed
        overwrite_files: Allow replacing files in the working directory
        pkcs8_client_key: Store the client key in PKCS#8 instead of PKCS#1
        client_user: Principal embedded in the client certificate
    """
    public_service_name: str = ""
    discovery_service_name: str = ""
    cluster_domain: str = DEFAULT_CLUSTER_DOMAIN
    key_size: int = DEFAULT_KEY_SIZE
    ca: CertConfig = field(default=DEFAULT_CA_CONFIG)
    node: CertConfig = field(default=DEFAULT_NODE_CONFIG)
    client: CertConfig = field(default=DEFAULT_CLIENT_CONFIG)
    ca_secret: Optional[str] = None
    allow_ca_key_reuse: bool = False
    overwrite_files: bool = False
    pkcs8_client_key: bool = False
    client_user: str = DEFAULT_CLIENT_USER

    @property
    def ca_secret_name(self) -> str:
        return self.secret_name(SecretRole.CA)

    @property
    def node_secret_name(self) -> str:
        return self.secret_name(SecretRole.NODE)

    @property
    def client_secret_name(self) -> str:
        return self.secret_name(SecretRole.CLIENT)

    def secret_name(self, role: SecretRole) -> str:
        """Name of the secret holding a role's bundle."""
        return f"{self.discovery_service_name}-{role.key}-secret"

    def cert_config(self, role: SecretRole) -> CertConfig:
        """Validity settings for a role."""
        return {
            SecretRole.CA: self.ca,
            SecretRole.NODE: self.node,
            SecretRole.CLIENT: self.client,
        }[role]

    def with_overrides(self, **changes: Any) -> "SignerConfig":
        """Return a copy with the given fields replaced (None values ignored)."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ValueError: If a required setting is missing or invalid
        """
        validate_dns_label(self.public_service_name, "public service name")
        validate_dns_label(self.discovery_service_name, "discovery service name")
        validate_key_size(self.key_size)

        if not self.cluster_domain:
            raise ValueError(
                "Cluster domain cannot be empty. "
                f"Hint: Most clusters use '{DEFAULT_CLUSTER_DOMAIN}'."
            )
        validate_dns_subdomain(self.cluster_domain, "cluster domain")

        if self.ca_secret is not None:
            validate_secret_name(self.ca_secret)

        if not self.client_user or not self.client_user.strip():
            raise ValueError("Client user cannot be empty. Hint: The default principal is 'root'.")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignerConfig":
        """Build a config from flag-style keys (dashes or underscores).

        Args:
            data: Mapping such as {"key-size": 2048, "node-duration": "8760h"}

        Returns:
            The parsed configuration

        Raises:
            ConfigParseError: If a value cannot be parsed
            ValueError: If an unknown key is present
        """
        values = {_normalise_key(k): v for k, v in data.items() if v is not None}
        kwargs: dict[str, Any] = {}

        for key, value in values.items():
            if key in _SCALAR_KEYS:
                kwargs[_SCALAR_KEYS[key]] = value
            elif not any(key == f"{role.key}-{s}" for role in SecretRole for s in ("duration", "expiry", "expiry-window")):
                raise ValueError(f"Unknown configuration key '{key}'.")

        for name in _BOOL_FIELDS & kwargs.keys():
            kwargs[name] = _parse_bool(kwargs[name], name)

        if "key_size" in kwargs:
            try:
                kwargs["key_size"] = int(kwargs["key_size"])
            except (TypeError, ValueError) as e:
                raise ConfigParseError(f"invalid key size {kwargs['key_size']!r}") from e

        for name in ("public_service_name", "discovery_service_name", "cluster_domain", "ca_secret", "client_user"):
            if name in kwargs:
                kwargs[name] = str(kwargs[name])

        defaults = {SecretRole.CA: DEFAULT_CA_CONFIG, SecretRole.NODE: DEFAULT_NODE_CONFIG,
                    SecretRole.CLIENT: DEFAULT_CLIENT_CONFIG}
        for role, default in defaults.items():
            duration = values.get(f"{role.key}-duration")
            window = values.get(f"{role.key}-expiry", values.get(f"{role.key}-expiry-window"))
            if duration is None and window is None:
                continue
            kwargs[role.key] = CertConfig(
                duration=parse_duration(str(duration)) if duration is not None else default.duration,
                expiry_window=parse_duration(str(window)) if window is not None else default.expiry_window,
            )

        return cls(**kwargs)

    @classmethod
    def from_config_file(cls, config_path: Union[str, Path]) -> "SignerConfig":
        """Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML file

        Returns:
            The parsed configuration

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigParseError: If the file is not valid YAML
        """
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigParseError(f"invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigParseError(f"config file {path} must contain a mapping")

        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "SignerConfig":
        """Load configuration from SELF_SIGNER_* environment variables."""
        data = {}
        for key in _ENV_KEYS:
            env_name = ENV_PREFIX + key.upper().replace("-", "_")
            if env_name in os.environ:
                data[key] = os.environ[env_name]
        return cls.from_dict(data)


def _normalise_key(key: str) -> str:
    return str(key).strip().lower().replace("_", "-")


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigParseError(f"invalid boolean for {name}: {value!r}")


def has_env_config() -> bool:
    """Check whether any SELF_SIGNER_* setting is present in the environment."""
    return any(
        ENV_PREFIX + key.upper().replace("-", "_") in os.environ
        for key in _ENV_KEYS
    )


def load_config(config_path: Optional[Union[str, Path]] = None) -> SignerConfig:
    """Load configuration from the best available source.

    Priority order:
    1. Explicit config_path argument
    2. SELF_SIGNER_CONFIG_PATH environment variable
    3. SELF_SIGNER_* environment variables

    Returns:
        The loaded configuration

    Raises:
        ValueError: If no configuration source is available
    """
    path = config_path or os.environ.get(CONFIG_PATH_ENV)
    if path:
        return SignerConfig.from_config_file(path)

    if has_env_config():
        return SignerConfig.from_env()

    raise ValueError(
        "No self-signer configuration found. "
        f"Pass --config, set {CONFIG_PATH_ENV}, or set {ENV_PREFIX}* environment variables."
    )

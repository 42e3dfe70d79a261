"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides
- Configuration initialization and display
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional, TYPE_CHECKING

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hostwall.core.exceptions import ConfigurationError, HostwallError
from hostwall.core.validation import validate_log_target, validate_path, validate_port

if TYPE_CHECKING:
    from hostwall.policy.model import RateLimit


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/hostwall/config.yaml")
DEFAULT_RULES_DIR = Path("/root")
DEFAULT_RESTORE_SCRIPT = Path("/etc/iptables/restore-firewall.sh")
DEFAULT_RSYSLOG_CONF = Path("/etc/rsyslog.conf")
DEFAULT_AUDIT_LOG = Path("/var/log/hostwall/audit.log")

# Longest generated LOG prefix adds "_DROP_OUT6: " (12 chars) to the base;
# netfilter caps --log-prefix at 29 characters
MAX_LOG_PREFIX_LENGTH = 18


class AddressStrictness(str, Enum):
    """How strictly operator-supplied address literals are checked."""
    PERMISSIVE = "permissive"
    STRICT = "strict"


def _parse_port_set(v: str) -> str:
    """Validate the comma-separated port set form and normalise it."""
    # policy.model imports hostwall.core, so it cannot be imported at module level
    from hostwall.policy.model import PortSet

    try:
        return str(PortSet.parse(v))
    except HostwallError as e:
        raise ValueError(e.message) from e


class DCPortsConfig(BaseModel):
    """Ports opened toward domain controllers, per family and protocol."""

    model_config = ConfigDict(frozen=True)

    v4_tcp: str = "53,88,135,389,445,464,636,3268,3269,49152:65535"
    v4_udp: str = "53,88,123,389,464"
    v6_tcp: str = "53,88,389,443,636,3268,3269"
    v6_udp: str = "53,88,123,389,464"

    @field_validator("v4_tcp", "v4_udp", "v6_tcp", "v6_udp")
    @classmethod
    def validate_port_set(cls, v: str) -> str:
        return _parse_port_set(v)


class RateLimitConfig(BaseModel):
    """SSH connection rate limit per source address."""

    model_config = ConfigDict(frozen=True)

    count: int = 5
    window: int = 60  # seconds

    def to_rate_limit(self) -> "RateLimit":
        from hostwall.policy.model import RateLimit

        return RateLimit(self.count, self.window)

    @field_validator("count")
    @classmethod
    def validate_count(cls, v: int) -> int:
        if not 1 <= v <= 19:
            raise ValueError("ssh_rate_limit.count must be between 1 and 19")
        return v

    @field_validator("window")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("ssh_rate_limit.window must be positive")
        return v


class FirewallConfig(BaseModel):
    """Constants the policy compiler works from.

    Frozen so a compiled policy is a pure function of this object and
    the validated operator input.
    """

    model_config = ConfigDict(frozen=True)

    ssh_port: int = 22
    ssh_rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    recent_name: str = "SSH"
    icmp_rate: str = "1/second"
    log_prefix: str = "FIREWALL"
    log_level: int = 6
    address_strictness: AddressStrictness = AddressStrictness.PERMISSIVE
    dc_ports: DCPortsConfig = Field(default_factory=DCPortsConfig)

    @field_validator("ssh_port")
    @classmethod
    def validate_ssh_port(cls, v: int) -> int:
        return validate_port(v)

    @field_validator("recent_name")
    @classmethod
    def validate_recent_name(cls, v: str) -> str:
        if not v or not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("recent_name must be alphanumeric (with - or _)")
        return v

    @field_validator("icmp_rate")
    @classmethod
    def validate_icmp_rate(cls, v: str) -> str:
        count, _, unit = v.partition("/")
        if not count.isdigit() or int(count) < 1 or unit not in {
            "second", "minute", "hour", "day",
        }:
            raise ValueError("icmp_rate must look like N/second, N/minute, N/hour or N/day")
        return v

    @field_validator("log_prefix")
    @classmethod
    def validate_log_prefix(cls, v: str) -> str:
        if not v or len(v) > MAX_LOG_PREFIX_LENGTH:
            raise ValueError(f"log_prefix must be 1-{MAX_LOG_PREFIX_LENGTH} characters")
        if any(c.isspace() or c in "\"'\\" for c in v):
            raise ValueError("log_prefix must not contain whitespace or quotes")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: int) -> int:
        if not 0 <= v <= 7:
            raise ValueError("log_level must be between 0 and 7")
        return v


class PersistenceConfig(BaseModel):
    """Where rules are stored and how they are replayed at boot."""

    rules_dir: Path = DEFAULT_RULES_DIR
    restore_script: Path = DEFAULT_RESTORE_SCRIPT
    unit_name: str = "firewall-persistent"
    conflicting_managers: list[str] = Field(default_factory=lambda: ["firewalld", "ufw"])

    @field_validator("rules_dir", "restore_script")
    @classmethod
    def validate_paths(cls, v: Path) -> Path:
        return Path(validate_path(str(v)))

    @field_validator("unit_name")
    @classmethod
    def validate_unit_name(cls, v: str) -> str:
        if not v or not v.replace("-", "").replace("_", "").isalnum():
            raise ValueError("unit_name must contain only letters, digits, - and _")
        return v


class LoggingConfig(BaseModel):
    """Host syslog forwarding and audit log settings."""

    syslog_server: Optional[str] = None
    syslog_port: int = 514
    rsyslog_conf: Path = DEFAULT_RSYSLOG_CONF
    audit_log: Path = DEFAULT_AUDIT_LOG

    @field_validator("syslog_server")
    @classmethod
    def validate_syslog_server(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return validate_log_target(v)
        return None

    @field_validator("syslog_port")
    @classmethod
    def validate_syslog_port(cls, v: int) -> int:
        return validate_port(v)


class HostConfig(BaseModel):
    """Root configuration model, loaded from /etc/hostwall/config.yaml."""

    firewall: FirewallConfig = Field(default_factory=FirewallConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    install_packages: bool = True

    @classmethod
    def load(cls, path: Path) -> "HostConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: hostwall config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {path}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "HostConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvOverrides(BaseSettings):
    """Settings taken from the environment, applied over the config file."""

    model_config = SettingsConfigDict(extra="ignore")

    syslog_server: Optional[str] = Field(None, alias="HOSTWALL_SYSLOG_SERVER")
    rules_dir: Optional[Path] = Field(None, alias="HOSTWALL_RULES_DIR")


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[HostConfig] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading if provided)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or HostConfig.load_or_default(self.config_path)
        self._env = EnvOverrides()
        self._apply_overrides()

    def _apply_overrides(self) -> None:
        persistence = self._config.persistence
        logging = self._config.logging
        try:
            if self._env.rules_dir is not None:
                persistence = PersistenceConfig(
                    **{**persistence.model_dump(), "rules_dir": self._env.rules_dir}
                )
            if self._env.syslog_server:
                logging = LoggingConfig(
                    **{**logging.model_dump(), "syslog_server": self._env.syslog_server}
                )
        except Exception as e:
            raise ConfigurationError(
                "Invalid value in HOSTWALL_* environment variables",
                details=[str(e)],
            ) from e
        self._config = self._config.model_copy(
            update={"persistence": persistence, "logging": logging}
        )

    @property
    def config(self) -> HostConfig:
        """Get the host configuration."""
        return self._config

    @property
    def firewall(self) -> FirewallConfig:
        """Shortcut to firewall config."""
        return self._config.firewall

    @property
    def persistence(self) -> PersistenceConfig:
        """Shortcut to persistence config."""
        return self._config.persistence

    @property
    def logging(self) -> LoggingConfig:
        """Shortcut to logging config."""
        return self._config.logging

    @property
    def install_packages(self) -> bool:
        return self._config.install_packages


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# hostwall configuration
# Every key is optional; built-in defaults are used for missing keys

# Policy compiler constants
firewall:
  ssh_port: 22
  ssh_rate_limit:
    count: 5     # new SSH connections allowed per window (1-19)
    window: 60   # seconds
  recent_name: SSH
  icmp_rate: 1/second
  log_prefix: FIREWALL   # at most 18 characters
  log_level: 6           # syslog level 0-7
  address_strictness: permissive  # permissive, strict
  # Ports opened toward domain controllers (domain-joined hosts only)
  dc_ports:
    v4_tcp: "53,88,135,389,445,464,636,3268,3269,49152:65535"
    v4_udp: "53,88,123,389,464"
    v6_tcp: "53,88,389,443,636,3268,3269"
    v6_udp: "53,88,123,389,464"

# Rule store and boot-time replay
persistence:
  rules_dir: /root   # <rules_dir>/<hostname>.rules and .rules.v6
  restore_script: /etc/iptables/restore-firewall.sh
  unit_name: firewall-persistent
  conflicting_managers:
    - firewalld
    - ufw

# Logging
# Forwarding is UDP. The default-deny OUTPUT policy has no accept for the
# log server (nor for DNS), so forwarded messages are dropped unless the
# policy is extended outside hostwall.
logging:
  # syslog_server: logs.example.com   # or HOSTWALL_SYSLOG_SERVER
  syslog_port: 514
  rsyslog_conf: /etc/rsyslog.conf
  audit_log: /var/log/hostwall/audit.log

# Install iptables, ip6tables and rsyslog with the detected package manager
install_packages: true
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)

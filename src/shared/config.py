"""Configuration management for the Resource Gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once at boot and cached; it is read-only afterwards.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from shared.errors import ConfigurationError

# Whitelist shipped with the Raspberry Pi deployment
DEFAULT_ALLOWED_COMMANDS = [
    "uptime",
    "hostname",
    "df",
    "free",
    "top",
    "ps",
    "who",
    "date",
    "uname",
    "lsblk",
    "lscpu",
    "lsmem",
    "vcgencmd",
    "cat /proc/cpuinfo",
    "cat /proc/meminfo",
    "cat /sys/class/thermal/thermal_zone0/temp",
]

DEFAULT_FORBIDDEN_KEYWORDS = [
    "insert",
    "update",
    "delete",
    "drop",
    "alter",
    "create",
    "attach",
    "detach",
]


def _split_csv(value: Any) -> Any:
    """Accept ``a,b,c`` strings from the environment as well as real lists."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ServerSettings(BaseSettings):
    """HTTP listener, authentication and session configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8443)
    token: Optional[str] = Field(default=None, description="Shared bearer secret")

    # TLS
    use_https: bool = Field(default=True)
    ssl_cert_path: str = Field(default="certs/server.crt")
    ssl_key_path: str = Field(default="certs/server.key")

    # Sessions
    session_idle_minutes: int = Field(default=60, gt=0)
    session_sweep_seconds: int = Field(default=60, gt=0)

    # Audit
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )


class PolicySettings(BaseSettings):
    """Process-wide security policy; never mutated after boot."""
    allowed_paths: Annotated[list[str], NoDecode] = Field(default_factory=list)
    allowed_commands: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS)
    )
    forbidden_statement_keywords: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_FORBIDDEN_KEYWORDS)
    )
    command_timeout_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="POLICY_",
        env_file=".env",
        extra="ignore"
    )

    split_lists = field_validator(
        "allowed_paths", "allowed_commands", "forbidden_statement_keywords", mode="before"
    )(_split_csv)


class DatabaseSettings(BaseSettings):
    """Read-only SQLite database exposed by the database tools."""
    path: Optional[str] = Field(default=None)
    default_limit: int = Field(default=100, gt=0)
    max_limit: int = Field(default=1000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        extra="ignore"
    )


class VaultSettings(BaseSettings):
    """Markdown note vault exposed by the vault tools."""
    path: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        extra="ignore"
    )


class UniFiSettings(BaseSettings):
    """UniFi network controller API."""
    host: Optional[str] = Field(default=None)
    api_key: Optional[str] = Field(default=None)
    site: str = Field(default="default")
    verify_tls: bool = Field(default=False, description="Controllers usually ship self-signed certs")
    timeout_seconds: float = Field(default=15.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="UNIFI_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.api_key)


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Component settings
    server: ServerSettings = Field(default_factory=ServerSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)
    unifi: UniFiSettings = Field(default_factory=UniFiSettings)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """
        Load settings from a YAML file.

        Each section is built through its own settings class so that
        environment variables still fill keys the file leaves out.
        """
        data = load_yaml_config(path)
        for name, field in cls.model_fields.items():
            section = data.get(name)
            if isinstance(section, dict) and isinstance(field.annotation, type) \
                    and issubclass(field.annotation, BaseSettings):
                data[name] = field.annotation(**section)
        return cls(**data)

    def validate_for_serving(self) -> None:
        """
        Check the configuration the listener cannot run without.

        Raises:
            ConfigurationError: If the shared token is missing, or TLS is
                enabled and the certificate material is absent.
        """
        if not self.server.token:
            raise ConfigurationError("MCP_TOKEN is required")

        if self.server.use_https:
            missing = [
                p for p in (self.server.ssl_cert_path, self.server.ssl_key_path)
                if not Path(p).is_file()
            ]
            if missing:
                raise ConfigurationError(
                    "TLS certificates not found",
                    details={"missing": missing},
                )


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return data


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)

"""
Shared configuration management for the Shopfront Access Layer.
"""

from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> Tuple[str, ...]:
    """Split a comma separated setting, dropping blanks."""
    return tuple(part.strip() for part in value.split(",") if part.strip())


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # IP whitelist
    whitelist_enabled: bool = Field(default=False)
    whitelist_ips: str = Field(default="127.0.0.1,localhost")
    whitelist_paths: str = Field(default="/api/admin/,/api/users/")

    # Request signing
    signing_enabled: bool = Field(default=False)
    signing_secret: str = Field(default="default-secret-key")
    signing_paths: str = Field(
        default="/api/users/delete,/api/shops/delete,/api/admin/,/api/auth/signup"
    )
    signing_max_skew_seconds: int = Field(default=300)

    # Bearer tokens
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")

    # Rate limiting (requests per window)
    rate_limit_window_seconds: int = Field(default=60)
    rate_limit_anonymous: int = Field(default=10)
    rate_limit_user: int = Field(default=60)
    rate_limit_shop_admin: int = Field(default=100)
    rate_limit_admin: int = Field(default=500)
    rate_limit_uploads: int = Field(default=5)
    rate_limit_auth: int = Field(default=5)
    rate_limit_messages: int = Field(default=30)
    rate_limit_idle_seconds: int = Field(default=600)
    rate_limits_file: Optional[str] = Field(default=None)

    @property
    def whitelist_ip_set(self) -> FrozenSet[str]:
        return frozenset(_split_csv(self.whitelist_ips))

    @property
    def whitelist_path_prefixes(self) -> Tuple[str, ...]:
        return _split_csv(self.whitelist_paths)

    @property
    def signing_path_prefixes(self) -> Tuple[str, ...]:
        return _split_csv(self.signing_paths)

    def role_rate_limits(self) -> Dict[str, int]:
        """Requests per window for each role tier."""
        limits = {
            "ANONYMOUS": self.rate_limit_anonymous,
            "USER": self.rate_limit_user,
            "SHOP_ADMIN": self.rate_limit_shop_admin,
            "ADMIN": self.rate_limit_admin,
        }
        limits.update(self._file_limits().get("roles", {}))
        return limits

    def endpoint_rate_limits(self) -> Dict[str, int]:
        """Requests per window for each endpoint class."""
        limits = {
            "uploads": self.rate_limit_uploads,
            "auth": self.rate_limit_auth,
            "messages": self.rate_limit_messages,
        }
        limits.update(self._file_limits().get("endpoints", {}))
        return limits

    def _file_limits(self) -> Dict[str, Dict[str, int]]:
        """Read tier overrides from ``rate_limits_file`` when configured."""
        if not self.rate_limits_file:
            return {}
        return load_rate_limits_file(self.rate_limits_file)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def load_rate_limits_file(path: str) -> Dict[str, Dict[str, int]]:
    """Load rate limit tier overrides from a YAML file.

    The file holds two optional mappings::

        roles:
          USER: 120
        endpoints:
          uploads: 10
    """
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Rate limit file {path} must contain a mapping")

    parsed: Dict[str, Dict[str, int]] = {}
    for section in ("roles", "endpoints"):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise ValueError(f"Rate limit file section '{section}' must be a mapping")
        parsed[section] = {str(name): int(limit) for name, limit in entries.items()}
    return parsed


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)

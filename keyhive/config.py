"""KeyHive configuration management.

Configuration sources (in priority order):
1. Environment variables (KEYHIVE_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from keyhive.models.key import PackageType


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite for development; postgresql+asyncpg:// in production
    url: str = "sqlite+aiosqlite:///./keyhive.db"
    echo: bool = False


class CodeConfig(BaseModel):
    """Drop-off / pickup code generation."""

    # No 0/O/1/I to keep codes readable over the phone
    alphabet: str = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
    drop_off_length: int = Field(default=8, ge=4, le=32)
    pickup_length: int = Field(default=8, ge=4, le=32)

    drop_off_ttl_hours: int = 168
    pickup_ttl_hours: int = 168

    # Collision retries before giving up with StorageError
    max_generation_attempts: int = 5

    # When True, ConfirmDrop must present the assignment's drop-off code
    require_drop_off_code: bool = False


class MagicLinkConfig(BaseModel):
    """Signed guest link configuration."""

    # Unset = random per process; links then do not survive a restart
    secret: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    ttl_days: int = 7
    frontend_url: str = "http://localhost:5173"


class LifecycleConfig(BaseModel):
    """Assignment lifecycle switches."""

    # dropped -> available in the same transaction as ConfirmDrop
    auto_make_available: bool = True

    # Reject ConfirmDrop into hives under maintenance or offline
    block_unavailable_hives: bool = True


class PackageConfig(BaseModel):
    """Return window per key package, in days."""

    weekly: int = 7
    monthly: int = 30
    yearly: int = 365
    pay_per_use: int = 1

    def return_window(self, package_type: PackageType | str) -> timedelta:
        """Get the expected-return offset for a package type."""
        return timedelta(days=getattr(self, PackageType(package_type).value))


class SecurityConfig(BaseModel):
    """Security configuration."""

    # Allow requests without actor headers (acts as an admin "system" actor)
    # Development: True (default)
    # Production: False
    allow_anonymous: bool = True


class Settings(BaseSettings):
    """KeyHive application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KEYHIVE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    codes: CodeConfig = Field(default_factory=CodeConfig)
    magic_link: MagicLinkConfig = Field(default_factory=MagicLinkConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    packages: PackageConfig = Field(default_factory=PackageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. KEYHIVE_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/keyhive/config.yaml
    """
    import os

    config_paths = [
        os.environ.get("KEYHIVE_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/keyhive/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)

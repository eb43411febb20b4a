from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


SUPPORTED_DIALECTS = ("sqlite", "postgres")
SUPPORTED_TRANSPORTS = ("stdio", "http")


@dataclass
class IntegrityConfig:
    # Storage
    dialect: str = "sqlite"  # "sqlite" | "postgres"
    db_path: str = "integrity.db"
    postgres_dsn: str = ""

    # Pooling / timeouts
    pool_min_size: int = 1
    pool_max_size: int = 5
    command_timeout_s: int = 60

    # Repair
    fix_batch_size: int = 500

    # Service
    log_level: str = "INFO"
    transport: str = "http"
    http_host: str = "127.0.0.1"
    http_port: int = 8300


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dialect: str = "sqlite"
    db_path: str = "integrity.db"
    postgres_dsn: str = ""

    pool_min_size: int = 1
    pool_max_size: int = 5
    command_timeout_s: int = 60

    fix_batch_size: int = 500

    log_level: str = "INFO"
    transport: str = "http"
    http_host: str = "127.0.0.1"
    http_port: int = 8300

    @field_validator("dialect")
    @classmethod
    def validate_dialect(cls, value: str) -> str:
        value = str(value).lower()
        if value not in SUPPORTED_DIALECTS:
            raise ValueError(f"dialect must be one of {', '.join(SUPPORTED_DIALECTS)}")
        return value

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, value: str) -> str:
        value = str(value).lower()
        if value not in SUPPORTED_TRANSPORTS:
            raise ValueError(f"transport must be one of {', '.join(SUPPORTED_TRANSPORTS)}")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        value = str(value).upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Unknown log_level: {value}")
        return value

    @field_validator("pool_min_size", "pool_max_size", "fix_batch_size", "command_timeout_s")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("pool_max_size")
    @classmethod
    def validate_pool_bounds(cls, value: int, info):  # type: ignore[override]
        min_size = info.data.get("pool_min_size", 1)
        if int(value) < int(min_size):
            raise ValueError("pool_max_size must be at least pool_min_size")
        return value


def load_config(path: Optional[str] = None) -> IntegrityConfig:
    """Load config from YAML.

    Default path: ~/.config/link-integrity/link_integrity.yaml, overridden by
    the LINK_INTEGRITY_CONFIG_PATH environment variable.

    Example:

        dialect: postgres
        postgres_dsn: postgresql://app@localhost/app
        fix_batch_size: 1000
    """

    if path is None:
        env_path = os.environ.get("LINK_INTEGRITY_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "link-integrity", "link_integrity.yaml"
            )

    cfg = IntegrityConfig()
    if not os.path.isfile(path):
        return cfg
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration: expected a mapping in {path}")

    try:
        validated = AllowedConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = IntegrityConfig(**validated.model_dump())
    if cfg.dialect == "sqlite":
        if not cfg.db_path.startswith((":memory:", "file:")):
            cfg.db_path = os.path.abspath(cfg.db_path)
    elif not cfg.postgres_dsn:
        raise ValueError("Invalid configuration: postgres_dsn is required when dialect is postgres")
    if cfg.dialect == "sqlite" and cfg.postgres_dsn:
        logging.warning("postgres_dsn is ignored because dialect is sqlite.")
    return cfg

"""Configuration management for muxlink.

Loads settings from a YAML configuration file with ``MUXLINK_``-prefixed
environment variable overrides. Supports .env files.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/muxlink.yaml")

# Versioned constant: service name -> (local port, remote port).
DEFAULT_TUNNEL_MAPPINGS: dict[str, tuple[int, int]] = {
    "mysql": (13306, 3306),
    "redis": (16379, 6379),
    "postgresql": (15432, 5432),
}


class SSHConfig(BaseModel):
    ssh_path: str | None = Field(
        default=None, description="Absolute path to ssh; resolved on PATH when unset"
    )
    scp_path: str | None = Field(
        default=None, description="Absolute path to scp; resolved on PATH when unset"
    )
    control_dir: str = Field(default="/tmp")
    control_prefix: str = Field(default="muxlink-ssh")
    strict_host_key_checking: bool = Field(default=False)
    batch_mode: bool = Field(default=True)
    connect_timeout: int = Field(default=10, gt=0)
    control_persist: int = Field(default=600, ge=0)


class BrokerConfig(BaseModel):
    max_wait: float = Field(default=60.0, gt=0)
    check_interval: float = Field(default=0.5, gt=0)
    spawn_delay: float = Field(default=5.0, ge=0)
    check_timeout: float = Field(default=5.0, gt=0)
    spawn_master: bool = Field(default=True)
    spawn_timeout: float = Field(default=20.0, gt=0)


class ExecutionConfig(BaseModel):
    default_timeout: float = Field(default=30.0, gt=0)
    probe_timeout: float = Field(default=10.0, gt=0)
    container_timeout: float = Field(default=15.0, gt=0)
    control_timeout: float = Field(default=10.0, gt=0)
    kill_grace: float = Field(default=2.0, ge=0)


class TransferConfig(BaseModel):
    timeout: float = Field(default=300.0, gt=0)
    recursive: bool = Field(default=True)


class TunnelConfig(BaseModel):
    remote_host: str = Field(default="127.0.0.1")
    auto_establish: bool = Field(default=True)
    mappings: dict[str, tuple[int, int]] = Field(
        default_factory=lambda: dict(DEFAULT_TUNNEL_MAPPINGS)
    )


class EndpointConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for muxlink.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "MUXLINK_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    tunnels: TunnelConfig = Field(default_factory=TunnelConfig)
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    YAML values are passed to the model as init arguments; sections the
    YAML file leaves out fall back to environment variables and defaults.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    return Settings(**yaml_data)

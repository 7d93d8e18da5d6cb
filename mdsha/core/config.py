"""
Agent configuration

Parameters are read once per invocation from ``OCF_RESKEY_<name>`` variables
set by the cluster resource manager, falling back to an optional YAML file
and then to built-in defaults. The resulting model is frozen.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

OCF_PREFIX = "OCF_RESKEY_"
DEFAULT_CONFIG_PATH = Path("/etc/mdsha/agent.yaml")


class AgentConfig(BaseModel):
    """Runtime parameters of one metadata-server resource instance"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    config_file: Path = Field(Path("/etc/mfs/mfsmaster.cfg"), description="Base metadata server configuration")
    overlay_file: Optional[Path] = Field(None, description="Runtime configuration overlay (defaults to <data_dir>/mfsmaster-ha.cfg)")
    data_dir: Path = Field(Path("/var/lib/mfs"), description="Metadata data directory")
    user: Optional[str] = Field(None, description="Owner of data and overlay files")
    group: Optional[str] = Field(None, description="Group of data and overlay files")

    host: str = Field("localhost", description="Control endpoint host")
    port: int = Field(9421, ge=1, le=65535, description="Control endpoint port")
    admin_password: Optional[str] = Field(None, description="Shared admin secret")
    admin_password_file: Optional[Path] = Field(None, description="File holding the shared admin secret")

    master_binary: str = Field("mfsmaster", description="Metadata server executable")
    admin_binary: str = Field("lizardfs-admin", description="Admin tool used for porcelain status queries")
    probe_mode: str = Field("rpc", description="Status probe transport (rpc or porcelain)")

    probe_timeout: float = Field(5.0, gt=0, description="Seconds allowed for one status probe")
    command_timeout: float = Field(60.0, gt=0, description="Seconds allowed for start/stop/reload commands")
    connect_retries: int = Field(10, ge=1, le=600, description="Probes while waiting for a shadow to connect")
    retry_interval: float = Field(1.0, ge=0, description="Seconds between connection probes")
    lock_timeout: float = Field(10.0, gt=0, description="Bounded wait for the overlay lock")

    metrics_file: Optional[Path] = Field(None, description="Prometheus textfile collector output")
    log_level: str = Field("INFO", description="Logging level")
    log_file: Optional[Path] = Field(None, description="Optional log file")

    @field_validator("probe_mode")
    @classmethod
    def _check_probe_mode(cls, value: str) -> str:
        if value not in ("rpc", "porcelain"):
            raise ValueError("probe_mode must be 'rpc' or 'porcelain'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @property
    def overlay_path(self) -> Path:
        return self.overlay_file or self.data_dir / "mfsmaster-ha.cfg"

    def read_secret(self) -> Optional[str]:
        if self.admin_password:
            return self.admin_password
        if self.admin_password_file:
            try:
                return self.admin_password_file.read_text().strip()
            except OSError as e:
                raise ConfigurationError(f"cannot read admin password file: {e}") from e
        return None


def _environment_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides = {}
    for name in AgentConfig.model_fields:
        value = environ.get(OCF_PREFIX + name)
        if value not in (None, ""):
            overrides[name] = value
    return overrides


def load_config(environ: Optional[Mapping[str, str]] = None,
                config_path: Optional[Path] = None) -> AgentConfig:
    """Build the agent configuration from the environment and optional YAML file"""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(environ.get("MDSHA_CONFIG", DEFAULT_CONFIG_PATH))

    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to load {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping")
        logger.debug(f"Loaded agent settings from {config_path}")

    data.update(_environment_overrides(environ))

    try:
        return AgentConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid agent configuration: {e}") from e

"""Configuration management for cpc.

Two layers:

* ``Config`` - locations of the operator's repository and local state, read
  from environment variables (``.env`` files are honoured via python-dotenv).
* ``CpcSettings`` - tunables (timeouts, retry policy, thresholds) loaded from
  an optional YAML file.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("cpc.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS = [
    Path("~/.config/cpc/config.yaml"),
    Path("cpc-config.yaml"),
]


class Config:
    """Filesystem layout and external tool locations."""

    def __init__(self):
        repo = Path(os.getenv("CPC_REPO_PATH", os.getcwd())).expanduser()
        self.REPO_PATH: Path = repo
        self.TERRAFORM_DIR: Path = Path(os.getenv("CPC_TERRAFORM_DIR", str(repo / "terraform"))).expanduser()
        self.ANSIBLE_DIR: Path = Path(os.getenv("CPC_ANSIBLE_DIR", str(repo / "ansible"))).expanduser()
        self.ENVS_DIR: Path = Path(os.getenv("CPC_ENVS_DIR", str(repo / "envs"))).expanduser()
        self.CONTEXT_FILE: Path = Path(
            os.getenv("CPC_CONTEXT_FILE", "~/.config/cpc/current_cluster_context")
        ).expanduser()
        self.CACHE_DIR: Path = Path(os.getenv("CPC_CACHE_DIR", tempfile.gettempdir())).expanduser()
        self.SETTINGS_FILE: Optional[str] = os.getenv("CPC_CONFIG")
        self.KUBECONFIG: Path = Path(os.getenv("KUBECONFIG", "~/.kube/config")).expanduser()
        self.REMOTE_USER: str = os.getenv("ANSIBLE_REMOTE_USER", "ubuntu")
        self.SSH_KEY_PATH: Optional[str] = os.getenv("CPC_SSH_KEY_PATH")
        self.INFRA_BINARY: str = os.getenv("CPC_INFRA_BINARY", "tofu")

    def validate(self) -> List[str]:
        """Return a list of problems with the configured directories."""
        problems = []
        for label, path in (
            ("CPC_TERRAFORM_DIR", self.TERRAFORM_DIR),
            ("CPC_ANSIBLE_DIR", self.ANSIBLE_DIR),
            ("CPC_ENVS_DIR", self.ENVS_DIR),
        ):
            if not path.is_dir():
                problems.append(f"{label} does not exist: {path}")
        return problems


class SSHSettings(BaseModel):
    """SSH connection settings."""
    user: Optional[str] = Field(default=None, description="Overrides ANSIBLE_REMOTE_USER")
    key_path: Optional[str] = Field(default=None, description="Path to SSH private key")
    port: int = Field(default=22, ge=1, le=65535)
    connect_timeout: int = Field(default=10, ge=1, description="Seconds")
    command_timeout: int = Field(default=60, ge=1, description="Seconds")

    @field_validator("key_path")
    @classmethod
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        return os.path.expanduser(v) if v else v


class TimeoutSettings(BaseModel):
    control_plane: int = Field(default=600, ge=1)
    networking: int = Field(default=300, ge=1)
    addon_ready: int = Field(default=300, ge=1)
    smoke_test: int = Field(default=180, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=2.0, ge=0)
    backoff: str = Field(default="linear", description="fixed or linear")

    @field_validator("backoff")
    @classmethod
    def check_backoff(cls, v: str) -> str:
        if v not in ("fixed", "linear"):
            raise ValueError("backoff must be 'fixed' or 'linear'")
        return v


class AddonSettings(BaseModel):
    annotation_threshold_bytes: int = Field(
        default=200000,
        ge=1,
        description="Strip last-applied-configuration above this size",
    )
    csr_pattern: str = Field(default="kubelet-serving")


class CacheSettings(BaseModel):
    ssh_ttl: float = Field(default=10.0, ge=0)
    infra_ttl: float = Field(default=300.0, ge=0)


class CpcSettings(BaseModel):
    """Tunables for the orchestration engine."""
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    addons: AddonSettings = Field(default_factory=AddonSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    domain: str = Field(default="", description="DNS suffix for generated hostnames")

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "CpcSettings":
        """Load settings from an explicit path or the first default path that exists."""
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise FileNotFoundError(f"Settings file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        return cls(**config_data)

    @staticmethod
    def _load_config_file(path: Path) -> Dict[str, Any]:
        logger.debug(f"Loading settings from {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        return data


_settings: Optional[CpcSettings] = None


def get_settings() -> CpcSettings:
    """Return process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = CpcSettings.load(os.getenv("CPC_CONFIG"))
    return _settings


def set_settings(settings: Optional[CpcSettings]) -> None:
    """Replace the process-wide settings (None forces a reload)."""
    global _settings
    _settings = settings

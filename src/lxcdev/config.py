"""Configuration schema for lxcdev.

Configuration is loaded from .lxcdev.yml in the project directory.
"""

from __future__ import annotations

import getpass
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .types import VERBOSITY_LEVELS, RunContext

CONFIG_FILENAME = ".lxcdev.yml"


class ContainerConfig(BaseModel):
    """Container lifecycle defaults."""

    image: str = "ubuntu:24.04"
    name_prefix: str = "lxcdev"
    keep: bool = False
    ephemeral: bool = False
    lxc_binary: str = "lxc"
    # Interpreter and scratch directory used to run lxcdev inside containers.
    remote_python: str = "python3"
    remote_tmp: str = "/tmp"

    @field_validator("remote_tmp")
    @classmethod
    def validate_remote_tmp(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("remote_tmp must be an absolute path")
        return v


class BootConfig(BaseModel):
    """Boot detection settings."""

    timeout_seconds: int = 30
    bus_warning_after: int = 5
    network_probe_host: str = "archive.ubuntu.com"

    @field_validator("timeout_seconds", "bus_warning_after")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v


class DispatchConfig(BaseModel):
    """Environment forwarded when re-invoking as another user or in a container."""

    proxy_env: list[str] = Field(
        default_factory=lambda: [
            "http_proxy",
            "https_proxy",
            "ftp_proxy",
            "no_proxy",
            "HTTP_PROXY",
            "HTTPS_PROXY",
            "FTP_PROXY",
            "NO_PROXY",
        ]
    )


class ProvisionConfig(BaseModel):
    """Packages and user created in freshly launched containers."""

    packages: list[str] = Field(default_factory=lambda: ["git", "sudo"])
    user: str = Field(default_factory=getpass.getuser)
    uid: int | None = Field(default_factory=os.getuid)
    sudo: bool = True
    shell: str = "/bin/bash"


class GitConfig(BaseModel):
    """Git transfer defaults."""

    target_dir: str = "src"
    include_changes: bool = False


class PatchesConfig(BaseModel):
    """quilt settings for Debian patch series."""

    patches_dir: str = "debian/patches"
    series: str = "series"
    refresh_args: str = "-p ab --no-timestamps --no-index"


class ChangelogConfig(BaseModel):
    """dch settings."""

    edit: bool = False
    message_template: str = "Cherry-pick upstream commit {short}: {subject}"


class JenkinsConfig(BaseModel):
    """Jenkins REST API access."""

    url: str | None = None
    user: str | None = None
    token: str | None = None
    timeout_seconds: int = 60
    verify_tls: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("jenkins url must start with http:// or https://")
        return v


class TelemetryConfig(BaseModel):
    """Telemetry and logging configuration."""

    enabled: bool = True
    log_path: str = ".lxcdev/telemetry.jsonl"
    retention_days: int = 30


class LxcdevConfig(BaseModel):
    """Complete lxcdev configuration."""

    verbosity: str = "normal"
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    boot: BootConfig = Field(default_factory=BootConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    provision: ProvisionConfig = Field(default_factory=ProvisionConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    patches: PatchesConfig = Field(default_factory=PatchesConfig)
    changelog: ChangelogConfig = Field(default_factory=ChangelogConfig)
    jenkins: JenkinsConfig = Field(default_factory=JenkinsConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @field_validator("verbosity")
    @classmethod
    def validate_verbosity(cls, v: str) -> str:
        if v not in VERBOSITY_LEVELS:
            raise ValueError(f"Invalid verbosity: {v}. Must be one of {VERBOSITY_LEVELS}")
        return v

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> LxcdevConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f)

        return cls(**(data or {}))

    @classmethod
    def load_from_dir(cls, project_path: Path | str) -> LxcdevConfig:
        """Load configuration from the project's .lxcdev.yml."""
        config_path = Path(project_path) / CONFIG_FILENAME

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # Container overrides
        if image := os.getenv("LXCDEV_IMAGE"):
            self.container.image = image
        if os.getenv("LXCDEV_KEEP") == "1":
            self.container.keep = True
        if binary := os.getenv("LXCDEV_LXC_BINARY"):
            self.container.lxc_binary = binary

        # Boot overrides
        if timeout := os.getenv("LXCDEV_BOOT_TIMEOUT"):
            self.boot.timeout_seconds = int(timeout)

        # Provision overrides
        if user := os.getenv("LXCDEV_USER"):
            self.provision.user = user

        # Jenkins overrides
        if url := os.getenv("LXCDEV_JENKINS_URL"):
            self.jenkins.url = url.rstrip("/")
        if user := os.getenv("LXCDEV_JENKINS_USER"):
            self.jenkins.user = user
        if token := os.getenv("LXCDEV_JENKINS_TOKEN"):
            self.jenkins.token = token

        # Telemetry overrides
        if log_path := os.getenv("LXCDEV_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path
        if os.getenv("LXCDEV_TELEMETRY_DISABLED") == "1":
            self.telemetry.enabled = False

        if verbosity := os.getenv("LXCDEV_VERBOSITY"):
            self.verbosity = self.validate_verbosity(verbosity)

    def to_run_context(self, **overrides: Any) -> RunContext:
        """The plain settings value handed to the core operations."""
        values: dict[str, Any] = {
            "verbosity": self.verbosity,
            "keep": self.container.keep,
            "remote_python": self.container.remote_python,
            "remote_tmp": self.container.remote_tmp,
            "proxy_env": tuple(self.dispatch.proxy_env),
        }
        values.update(overrides)
        return RunContext.from_environ(**values)


def load_config(project_path: Path | str) -> LxcdevConfig:
    """
    Load configuration for a project directory.

    Args:
        project_path: Directory that may hold a .lxcdev.yml

    Returns:
        Loaded and validated configuration
    """
    config = LxcdevConfig.load_from_dir(project_path)
    config.apply_env_overrides()
    return config

"""Configuration management for convoy."""

import fnmatch
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    CONVOY_DIR,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_RETAIN_IMAGES,
    SSH_COMMAND_TIMEOUT,
    SSH_CONNECT_TIMEOUT,
)
from .errors import ConfigError


class ContainerEngine(str, Enum):
    """Supported container engines."""

    DOCKER = "docker"
    PODMAN = "podman"


class RegistryType(str, Enum):
    """Where built images are published."""

    LOCAL = "local"  # registry container on the operator machine, reached via reverse forward
    REMOTE = "remote"


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = "unnamed-project"


class SSHConfig(BaseModel):
    """Remote shell settings shared by every host."""

    user: str | None = None
    port: int = 22
    key: str | None = None
    connect_timeout: int = SSH_CONNECT_TIMEOUT
    command_timeout: int = SSH_COMMAND_TIMEOUT
    options: list[str] = Field(default_factory=list, description="Extra -o options")


class RegistryConfig(BaseModel):
    """Image registry configuration."""

    type: RegistryType = RegistryType.LOCAL
    port: int = 9270
    server: str | None = None
    username: str | None = None

    def is_local(self) -> bool:
        """Return True if images are pushed to a registry on this machine."""
        return self.type == RegistryType.LOCAL

    def url(self) -> str:
        """Registry address used in image names."""
        if self.is_local():
            return f"localhost:{self.port}"
        if not self.server:
            raise ConfigError("Remote registry requires 'server'")
        return self.server

    def image_name(self, project: str, service: str, tag: str) -> str:
        """Full image reference for a built service."""
        prefix = f"{self.url()}/{self.username}" if self.username else self.url()
        return f"{prefix}/{project}-{service}:{tag}"


class BuilderConfig(BaseModel):
    """Image build configuration."""

    engine: ContainerEngine = ContainerEngine.DOCKER
    cache: bool = True
    registry: RegistryConfig = Field(default_factory=RegistryConfig)


class ProxyDefaults(BaseModel):
    """Fleet proxy container settings."""

    image: str = "docker.io/basecamp/kamal-proxy:latest"
    http_port: int = 80
    https_port: int = 443


class ServiceProxyConfig(BaseModel):
    """Per-service proxy routing."""

    enabled: bool = False
    hosts: list[str] = Field(default_factory=list)
    ssl: bool = False
    app_port: int | None = None
    healthcheck_path: str = "/up"

    @field_validator("hosts", mode="before")
    @classmethod
    def _single_host(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value


class BuildConfig(BaseModel):
    """How to build a service image."""

    context: str = "."
    dockerfile: str = "Dockerfile"
    args: dict[str, str] = Field(default_factory=dict)
    target: str | None = None


class ServiceConfig(BaseModel):
    """One deployable service."""

    image: str | None = None
    build: BuildConfig | None = None
    hosts: list[str] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    command: str | None = None
    retain: int = DEFAULT_RETAIN_IMAGES
    proxy: ServiceProxyConfig = Field(default_factory=ServiceProxyConfig)

    @field_validator("build", mode="before")
    @classmethod
    def _build_context_shorthand(cls, value: Any) -> Any:
        return {"context": value} if isinstance(value, str) else value

    def requires_build(self) -> bool:
        """Return True if the image is built from source."""
        return self.build is not None

    def app_port(self) -> int | None:
        """Port the proxy should target inside the container."""
        if self.proxy.app_port:
            return self.proxy.app_port
        if not self.ports:
            return None
        # "8080:3000" -> 3000, "3000" -> 3000, "127.0.0.1:8080:3000/tcp" -> 3000
        container_port = self.ports[0].split(":")[-1].split("/")[0]
        return int(container_port) if container_port.isdigit() else None


class PoolConfig(BaseModel):
    """Concurrency limits for fleet operations."""

    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1)


class ConvoyConfig(BaseModel):
    """Root configuration for convoy."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    builder: BuilderConfig = Field(default_factory=BuilderConfig)
    proxy: ProxyDefaults = Field(default_factory=ProxyDefaults)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    services: dict[str, ServiceConfig] = Field(default_factory=dict)
    config_path: Path | None = Field(default=None, exclude=True)

    def all_hosts(self) -> list[str]:
        """Unique hosts across services, in first-seen order."""
        hosts: list[str] = []
        for service in self.services.values():
            for host in service.hosts:
                if host not in hosts:
                    hosts.append(host)
        return hosts

    def image_for(self, name: str, tag: str) -> str:
        """Image reference deployed for a service at a version tag."""
        service = self.services[name]
        if service.requires_build():
            return self.builder.registry.image_name(self.project.name, name, tag)
        if service.image is None:
            raise ConfigError(f"Service '{name}' needs either 'image' or 'build'")
        return service.image


def split_patterns(patterns: str | None) -> list[str]:
    """Split a comma separated pattern list, dropping blanks."""
    if not patterns:
        return []
    return [p.strip() for p in patterns.split(",") if p.strip()]


def filter_by_patterns(names: list[str], patterns: str | None) -> list[str]:
    """Keep names matching any shell-style wildcard pattern.

    An empty pattern list keeps everything.
    """
    wanted = split_patterns(patterns)
    if not wanted:
        return list(names)
    return [n for n in names if any(fnmatch.fnmatchcase(n, p) for p in wanted)]


def default_config_path(project_root: Path | None = None) -> Path:
    """Path to the default config file under the project root."""
    return (project_root or Path.cwd()) / CONVOY_DIR / CONFIG_FILE


def load_config(config_path: Path | None = None) -> ConvoyConfig:
    """Load and validate config from TOML.

    Args:
        config_path: Explicit config file, or None for .convoy/config.toml

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file is missing, not valid TOML, or fails validation
    """
    path = config_path or default_config_path()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}. Run 'convoy init' first.")
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    try:
        config = ConvoyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e

    for name, service in config.services.items():
        if service.image is None and service.build is None:
            raise ConfigError(f"Service '{name}' needs either 'image' or 'build'")

    config.config_path = path
    return config


def write_config_template(convoy_dir: Path) -> Path:
    """Write default config.toml template.

    Args:
        convoy_dir: Path to .convoy directory

    Returns:
        Path to the written config file
    """
    convoy_dir.mkdir(parents=True, exist_ok=True)
    config_path = convoy_dir / CONFIG_FILE
    template = {
        "project": {"name": "your-project"},
        "ssh": {"user": "deploy", "port": 22, "connect_timeout": SSH_CONNECT_TIMEOUT},
        "builder": {
            "engine": "docker",
            "cache": True,
            "registry": {"type": "local", "port": 9270},
        },
        "pool": {"max_concurrent": DEFAULT_MAX_CONCURRENT},
        "services": {
            "web": {
                "build": ".",
                "hosts": ["web1.example.com", "web2.example.com"],
                "ports": ["3000"],
                "retain": DEFAULT_RETAIN_IMAGES,
                "proxy": {"enabled": True, "hosts": ["app.example.com"], "ssl": False},
            },
        },
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(template, f)
    return config_path

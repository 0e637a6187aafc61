"""Configuration management for releasectl using Pydantic."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from releasectl.core.exceptions import ConfigError
from releasectl.core.output import OutputFormat
from releasectl.core.logging import LogLevel


def resolve_reference(value: str) -> str:
    """Resolve an ``env:NAME`` reference, returning plain values unchanged."""
    if value.startswith("env:"):
        name = value[4:]
        resolved = os.environ.get(name)
        if not resolved:
            raise ConfigError(f"Environment variable '{name}' is not set")
        return resolved
    return value


class ReleaseCtlSettings(BaseSettings):
    """Process-level settings read from RELEASECTL_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="RELEASECTL_", extra="ignore")

    state_dir: str | None = None
    ssh_binary: str = "ssh"
    scp_binary: str = "scp"
    keyscan_binary: str = "ssh-keyscan"


class BuildConfig(BaseModel):
    """Local build stages and packaging."""

    install: str | None = "npm ci"
    test: str | None = "npm test"
    build: str | None = None
    timeout: int = 900
    output_dir: str = ".releasectl/artifacts"
    exclude: list[str] = Field(
        default_factory=lambda: [".git", "node_modules", ".env", ".releasectl"]
    )


class HostConfig(BaseModel):
    """Target host connection settings."""

    address: str
    user: str = "ubuntu"
    port: int = 22
    credential: str = "env:RELEASECTL_SSH_KEY"
    host_key_fingerprint: str | None = None
    known_hosts: str | None = None
    connect_timeout: int = 10
    command_timeout: int = 300

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("credential")
    @classmethod
    def validate_credential(cls, v: str) -> str:
        if not v.startswith(("env:", "file:")):
            raise ValueError("credential must be an 'env:NAME' or 'file:PATH' reference")
        return v

    @field_validator("host_key_fingerprint")
    @classmethod
    def validate_fingerprint(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("SHA256:"):
            raise ValueError("host_key_fingerprint must be a 'SHA256:...' fingerprint")
        return v

    def get_address(self) -> str:
        """Get host address, resolving env references."""
        return resolve_reference(self.address)

    def get_user(self) -> str:
        """Get login user, resolving env references."""
        return resolve_reference(self.user)

    def get_known_hosts(self) -> str:
        """Get known_hosts path from config or environment."""
        return os.path.expanduser(
            os.environ.get("RELEASECTL_KNOWN_HOSTS")
            or self.known_hosts
            or "~/.ssh/known_hosts"
        )


class HealthConfig(BaseModel):
    """Liveness endpoint polling settings."""

    url: str = "http://{address}/health"
    timeout: float = 30.0
    interval: float = 2.0
    request_timeout: float = 5.0
    initial_delay: float = 0.0

    @model_validator(mode="after")
    def validate_timing(self) -> "HealthConfig":
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        return self


class AppConfig(BaseModel):
    """Application process settings on the remote host."""

    name: str = "app"
    deploy_path: str = "/home/ubuntu/app"
    script: str = "server.js"
    args: str | None = None
    instances: int | str = 1
    exec_mode: str = "cluster"
    max_memory_restart: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    install_command: str | None = "npm ci --omit=dev"
    keep_releases: int = 5
    save_process_list: bool = True
    pm2: str = "pm2"

    @field_validator("exec_mode")
    @classmethod
    def validate_exec_mode(cls, v: str) -> str:
        if v not in ("cluster", "fork"):
            raise ValueError("exec_mode must be 'cluster' or 'fork'")
        return v

    @field_validator("keep_releases")
    @classmethod
    def validate_keep_releases(cls, v: int) -> int:
        if v < 2:
            raise ValueError("keep_releases must be at least 2 to allow rollback")
        return v


class EnvironmentConfig(BaseModel):
    """Deployment target environment."""

    hosts: list[str] = Field(default_factory=list)
    branch: str = "main"
    env_file: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    health_url: str | None = None


class DeployConfig(BaseModel):
    """Release coordination settings."""

    max_parallel_hosts: int = 4
    lock_timeout: float = 600.0
    state_dir: str | None = None

    def get_state_dir(self) -> Path:
        """Get state directory from environment or config."""
        settings = ReleaseCtlSettings()
        return Path(settings.state_dir or self.state_dir or "~/.releasectl/state").expanduser()


class ProfileConfig(BaseModel):
    """Profile configuration grouping all release settings."""

    build: BuildConfig = Field(default_factory=BuildConfig)
    app: AppConfig = Field(default_factory=AppConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    hosts: dict[str, HostConfig] = Field(default_factory=dict)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_environment_hosts(self) -> "ProfileConfig":
        for env_name, env in self.environments.items():
            unknown = [h for h in env.hosts if h not in self.hosts]
            if unknown:
                raise ValueError(
                    f"environment '{env_name}' references unknown hosts: {', '.join(unknown)}"
                )
        return self

    def get_environment(self, name: str) -> EnvironmentConfig:
        """Get an environment by name."""
        if name not in self.environments:
            raise ConfigError(f"Environment '{name}' not found")
        env = self.environments[name]
        if not env.hosts:
            raise ConfigError(f"Environment '{name}' has no hosts")
        return env

    def get_host(self, name: str) -> HostConfig:
        """Get a host by name."""
        if name not in self.hosts:
            raise ConfigError(f"Host '{name}' not found")
        return self.hosts[name]

    def health_url(self, host_name: str, environment: str | None = None, strict: bool = True) -> str:
        """Resolve the liveness URL of a host.

        An environment's ``health_url`` overrides ``health.url``. Without an
        explicit environment, the only environment listing the host is used.
        With ``strict`` off, unresolvable ``env:`` addresses are left as
        written instead of raising ``ConfigError``.
        """
        host = self.get_host(host_name)
        if environment is None:
            owners = [name for name, env in self.environments.items() if host_name in env.hosts]
            environment = owners[0] if len(owners) == 1 else None

        template = self.health.url
        if environment is not None:
            template = self.get_environment(environment).health_url or template

        try:
            address = host.get_address()
        except ConfigError:
            if strict:
                raise
            address = host.address
        return template.format(address=address)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING
    dry_run: bool = False
    confirm_destructive: bool = True

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class ReleaseCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["releasectl.yaml", "releasectl.yml", ".releasectl.yaml", ".releasectl.yml"]

    def __init__(self) -> None:
        self._config: ReleaseCtlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        profile: str | None = None,
    ) -> ReleaseCtlConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./releasectl.yaml)
        3. User config (~/.releasectl/config.yaml)

        Args:
            config_file: Optional explicit config file path
            profile: Profile name to use

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".releasectl" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged = self._merge_configs(configs)

        try:
            self._config = ReleaseCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")
        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(
    config_file: str | Path | None = None,
    profile: str | None = None,
) -> ReleaseCtlConfig:
    """Load releasectl configuration.

    Args:
        config_file: Optional explicit config file path
        profile: Profile name to use

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file, profile)


def get_default_config() -> ReleaseCtlConfig:
    """Get default configuration without loading from files."""
    return ReleaseCtlConfig()

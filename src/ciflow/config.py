"""Configuration schema for the ciflow orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ciflow.exceptions import ConfigError
from ciflow.pipeline.constants import DEFAULT_CANCEL_GRACE_SECONDS, DEFAULT_STEP_TIMEOUT

DEFAULT_CONFIG_NAME = "ciflow.yaml"


class CapabilityConfig(BaseModel):
    """Configuration for a named capability.

    Attributes:
        command: Command line to run; tokens may use ``{arg}`` references.
        callable_path: Python callable ``module:function`` (``callable`` in YAML).
        env: Extra environment variables for the command.
        description: Human-readable description.
    """

    model_config = ConfigDict(populate_by_name=True)

    command: list[str] = Field(default_factory=list)
    callable_path: str | None = Field(default=None, alias="callable")
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @model_validator(mode="after")
    def validate_target(self) -> CapabilityConfig:
        """Exactly one of command or callable must be given."""
        if bool(self.command) == bool(self.callable_path):
            msg = "Capability needs exactly one of 'command' or 'callable'"
            raise ValueError(msg)
        return self


class RunConfig(BaseModel):
    """Configuration for run behavior.

    Attributes:
        concurrency: Maximum stages running at once (None for one per stage).
        fail_fast: Cancel the run as soon as any stage fails.
        step_timeout: Default per-step timeout in seconds.
        cancel_grace_seconds: Time running steps get to stop after cancellation.
        runs_dir: Directory for run reports and logs.
        shell: Shell prefix for ``run:`` steps.
        cwd: Working directory for commands (None for the current directory).
    """

    concurrency: int | None = Field(default=None, ge=1)
    fail_fast: bool = False
    step_timeout: int = Field(default=DEFAULT_STEP_TIMEOUT, ge=1)
    cancel_grace_seconds: int = Field(default=DEFAULT_CANCEL_GRACE_SECONDS, ge=0)
    runs_dir: Path = Path(".ciflow/runs")
    shell: list[str] = Field(default_factory=lambda: ["sh", "-e", "-c"])
    cwd: Path | None = None


class SecretsConfig(BaseModel):
    """Configuration for the environment secret provider.

    Attributes:
        env_prefix: Prefix for secret environment variables.
        allowed: If non-empty, only these secrets may be resolved.
    """

    env_prefix: str = ""
    allowed: list[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["debug", "info", "warning", "error"] = "info"
    format: Literal["console", "json"] = "console"


def _default_capabilities() -> dict[str, CapabilityConfig]:
    """Named actions for the reusable CI bundle."""
    return {
        "install-dependencies": CapabilityConfig(command=["npm", "ci"]),
        "lint": CapabilityConfig(command=["npm", "run", "lint"]),
        "typecheck": CapabilityConfig(command=["npm", "run", "typecheck"]),
        "test": CapabilityConfig(command=["npm", "test"]),
        "build": CapabilityConfig(command=["npm", "run", "build"]),
        "docker-build": CapabilityConfig(
            command=["docker", "build", "-t", "{image}", "{context}"]
        ),
        "docker-push": CapabilityConfig(command=["docker", "push", "{image}"]),
        "security-scan": CapabilityConfig(
            command=["trivy", "image", "--exit-code", "1", "{image}"]
        ),
        "release": CapabilityConfig(command=["npx", "semantic-release"]),
        "deploy": CapabilityConfig(command=["sh", "-c", "{command}"]),
    }


class CiflowConfig(BaseModel):
    """Complete ciflow configuration.

    Attributes:
        version: Config schema version.
        run: Run behavior configuration.
        capabilities: Named capabilities available to ``uses:`` steps.
        secrets: Secret provider configuration.
        logging: Logging configuration.

    Example:
        >>> config = CiflowConfig.default()
        >>> "lint" in config.capabilities
        True
    """

    version: str = "1.0"
    run: RunConfig = Field(default_factory=RunConfig)
    capabilities: dict[str, CapabilityConfig] = Field(default_factory=_default_capabilities)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def to_yaml(self) -> str:
        """Serialize the config to YAML."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    def save(self, path: Path) -> None:
        """Save the config to a YAML file."""
        path.write_text(self.to_yaml())

    @classmethod
    def from_yaml(cls, yaml_content: str, *, source: Path | None = None) -> CiflowConfig:
        """Parse config from YAML content.

        Capabilities given in the file are merged over the defaults.

        Raises:
            ConfigError: If the YAML or the config is invalid.
        """
        try:
            data: Any = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML: {e}"
            raise ConfigError(msg, source=source) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            msg = "Config YAML must be a mapping"
            raise ConfigError(msg, source=source)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigError(msg, source=source) from e

        if "capabilities" in data:
            merged = _default_capabilities()
            merged.update(config.capabilities)
            config = config.model_copy(update={"capabilities": merged})
        return config

    @classmethod
    def load(cls, path: Path) -> CiflowConfig:
        """Load config from a YAML file.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid.
        """
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise ConfigError(msg, source=path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Cannot read config file {path}: {e}"
            raise ConfigError(msg, source=path) from e
        return cls.from_yaml(content, source=path)

    @classmethod
    def default(cls) -> CiflowConfig:
        """Create a default configuration."""
        return cls()

    def with_settings(self, settings: CiflowSettings) -> CiflowConfig:
        """Apply environment overrides."""
        update_logging: dict[str, Any] = {}
        if settings.log_level:
            update_logging["level"] = settings.log_level
        if settings.log_format:
            update_logging["format"] = settings.log_format
        update_run: dict[str, Any] = {}
        if settings.runs_dir:
            update_run["runs_dir"] = settings.runs_dir
        return self.model_copy(
            update={
                "logging": self.logging.model_copy(update=update_logging),
                "run": self.run.model_copy(update=update_run),
            }
        )


class CiflowSettings(BaseSettings):
    """Environment overrides.

    Environment variables:
        CIFLOW_LOG_LEVEL: debug, info, warning or error
        CIFLOW_LOG_FORMAT: console or json
        CIFLOW_RUNS_DIR: Directory for run reports and logs
    """

    model_config = SettingsConfigDict(env_prefix="CIFLOW_", extra="ignore")

    log_level: Literal["debug", "info", "warning", "error"] | None = None
    log_format: Literal["console", "json"] | None = None
    runs_dir: Path | None = None


def load_config(path: Path | None = None, base_dir: Path | None = None) -> CiflowConfig:
    """Load config from ``path``, or ``ciflow.yaml`` in ``base_dir`` if present.

    Environment overrides from :class:`CiflowSettings` are applied last.
    """
    if path is None:
        candidate = (base_dir or Path.cwd()) / DEFAULT_CONFIG_NAME
        if candidate.exists():
            path = candidate

    config = CiflowConfig.load(path) if path is not None else CiflowConfig.default()
    return config.with_settings(CiflowSettings())

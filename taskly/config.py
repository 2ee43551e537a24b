"""Configuration Management with Pydantic.

This module implements the taskly configuration models using Pydantic for
parsing and validation of YAML/JSON configuration files, with ``TASKLY_*``
environment variable overrides layered on top. Command line flags are merged
last by the CLI, so the precedence is CLI > environment > file > defaults.
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from taskly.errors import ConfigurationError, ErrorCode

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
DEFAULT_CONFIG_NAMES = (
    "taskly.config.yaml",
    "taskly.config.yml",
    "taskly.config.json",
    ".tasklyrc.yaml",
    ".tasklyrc.yml",
    ".tasklyrc.json",
)
SUPPORTED_EXTENSIONS = (".yaml", ".yml", ".json")
HIGH_CONCURRENCY_THRESHOLD = 32
HIGH_TIMEOUT_THRESHOLD = 3600  # 1 hour
TRUTHY_VALUES = ("true", "1", "yes", "on", "enabled")

KillTrigger = Literal["success", "failure"]
SuccessCondition = Literal["all", "first", "last"]


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class TaskDescription(BaseModel):
    """A task as written in a config file or passed to the API.

    Attributes:
        command: Command line to run
        name: Display name (also used as the task id when given)
        env: Extra environment variables
        cwd: Working directory
        shell: True for the default shell, a shell name, or False for direct exec
        prefix_color: Explicit prefix color
        restart_tries: Restarts allowed after a failed attempt
        restart_delay: Delay before each restart, in milliseconds
    """

    command: str = Field(min_length=1, description="Command line to run")
    name: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    shell: bool | str = True
    prefix_color: str | None = Field(default=None, alias="prefixColor")
    restart_tries: int = Field(default=0, ge=0, alias="restartTries")
    restart_delay: int = Field(default=0, ge=0, alias="restartDelay", description="Restart delay in ms")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Reject whitespace-only commands."""
        if not v.strip():
            msg = "Command must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        """Environment values from YAML may be numbers or booleans."""
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    model_config = {"extra": "forbid", "populate_by_name": True}


class RunPolicy(BaseModel):
    """Run-wide admission, kill and success policy.

    Attributes:
        max_processes: Maximum concurrently live processes (0 means unlimited)
        kill_others_on: Final outcomes that stop every other task
        success_condition: How the aggregate success is decided
        ignore_missing: Skip tasks whose command or script does not exist
    """

    max_processes: int = Field(default=0, ge=0, description="0 means unlimited")
    kill_others_on: frozenset[KillTrigger] = Field(default_factory=frozenset)
    success_condition: SuccessCondition = "all"
    ignore_missing: bool = False

    @field_validator("kill_others_on", mode="before")
    @classmethod
    def parse_kill_others_on(cls, v: Any) -> Any:
        """Accept a comma separated string as well as a list."""
        return _split_csv(v)

    model_config = {"frozen": True}


class OutputConfig(BaseModel):
    """Output formatting settings.

    Attributes:
        prefix: Prefix type (index, pid, time, command, name, none) or template
        prefix_colors: Colors by task index; ``auto`` picks from the palette
        timestamp_format: Format of the ``{time}`` placeholder
        separator: Text between the prefix and the line content
        raw: Pass output through without prefixes
    """

    prefix: str = "index"
    prefix_colors: list[str] = Field(default_factory=list)
    timestamp_format: str = "yyyy-MM-dd HH:mm:ss.SSS"
    separator: str = " "
    raw: bool = False

    @field_validator("prefix_colors", mode="before")
    @classmethod
    def parse_prefix_colors(cls, v: Any) -> Any:
        return _split_csv(v)


class SupervisorConfig(BaseModel):
    """Per-process supervision settings.

    Attributes:
        timeout_seconds: Kill the process after this long (0 disables)
        max_memory_mb: Memory threshold checked by the resource monitor
        max_cpu_percent: CPU threshold checked by the resource monitor
        resource_check_interval: Seconds between resource samples (0 disables)
        resource_policy: ``notify`` only reports breaches, ``kill`` terminates
        kill_grace_seconds: Wait between SIGTERM and SIGKILL when stopping
    """

    timeout_seconds: float = Field(default=0, ge=0)
    max_memory_mb: float = Field(default=512, gt=0)
    max_cpu_percent: float = Field(default=100, gt=0)
    resource_check_interval: float = Field(default=1.0, ge=0)
    resource_policy: Literal["notify", "kill"] = "notify"
    kill_grace_seconds: float = Field(default=3.0, ge=0)


class TasklyConfig(BaseModel):
    """Top-level taskly configuration.

    Attributes:
        policy: Run policy
        output: Output formatting
        supervisor: Process supervision
        names: Task names by index
        cwd: Default working directory for tasks
        shell: Default shell mode for string commands
        restart_tries: Default restart budget for string commands
        restart_delay: Default restart delay in milliseconds
        tasks: Named tasks defined in the configuration file
        logging_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    policy: RunPolicy = Field(default_factory=RunPolicy)
    output: OutputConfig = Field(default_factory=OutputConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    names: list[str] = Field(default_factory=list)
    cwd: str | None = None
    shell: bool | str = True
    restart_tries: int = Field(default=0, ge=0)
    restart_delay: int = Field(default=0, ge=0)
    tasks: dict[str, TaskDescription] = Field(default_factory=dict)
    logging_level: str = Field(
        default="WARNING",
        description="Logging level",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )

    @field_validator("names", mode="before")
    @classmethod
    def parse_names(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("tasks", mode="before")
    @classmethod
    def parse_tasks(cls, v: Any) -> Any:
        """Allow ``name: "command"`` shorthand for task entries."""
        if isinstance(v, dict):
            return {k: {"command": t} if isinstance(t, str) else t for k, t in v.items()}
        return v

    @classmethod
    def from_file(cls, path: str | Path) -> "TasklyConfig":
        """Load configuration from a YAML or JSON file.

        Args:
            path: Path to the configuration file

        Returns:
            Parsed and validated TasklyConfig instance

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        config_path = Path(path)

        if not config_path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise ConfigurationError(msg, ErrorCode.CONFIG_FILE_NOT_FOUND)

        if config_path.suffix not in SUPPORTED_EXTENSIONS:
            msg = (
                f"Unsupported configuration file extension: {config_path.suffix}. "
                f"Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
            )
            raise ConfigurationError(msg)

        logger.info("loading_configuration", path=str(config_path))

        try:
            with config_path.open() as f:
                if config_path.suffix == ".json":
                    config_data = json.load(f)
                else:
                    config_data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            logger.exception("config_parse_error", error=str(e), path=str(config_path))
            msg = f"Invalid configuration file {config_path}: {e}"
            raise ConfigurationError(msg, ErrorCode.CONFIG_PARSE_ERROR, original_error=e) from e

        if config_data is None:
            config_data = {}
        if not isinstance(config_data, dict):
            msg = f"Configuration file must contain a mapping: {config_path}"
            raise ConfigurationError(msg, ErrorCode.CONFIG_PARSE_ERROR)

        config = cls.from_mapping(config_data)
        logger.info(
            "configuration_loaded",
            max_processes=config.policy.max_processes,
            tasks=len(config.tasks),
            logging_level=config.logging_level,
        )
        return config

    @classmethod
    def from_mapping(cls, config_data: dict[str, Any]) -> "TasklyConfig":
        """Validate a raw mapping after applying environment overrides.

        Raises:
            ConfigurationError: If the resulting configuration is invalid
        """
        config_data = cls._apply_env_overrides(dict(config_data))
        try:
            return cls(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg, original_error=e) from e

    @classmethod
    def _apply_env_overrides(cls, config_data: dict) -> dict:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern ``TASKLY_<KEY>``, for example
        ``TASKLY_MAX_CONCURRENCY`` or ``TASKLY_SUCCESS_CONDITION``.

        Args:
            config_data: Base configuration dictionary from file

        Returns:
            Configuration dictionary with environment overrides applied
        """
        env_overrides = {
            ("policy", "max_processes"): "TASKLY_MAX_CONCURRENCY",
            ("policy", "kill_others_on"): "TASKLY_KILL_OTHERS_ON",
            ("policy", "success_condition"): "TASKLY_SUCCESS_CONDITION",
            ("policy", "ignore_missing"): "TASKLY_IGNORE_MISSING",
            ("output", "prefix"): "TASKLY_PREFIX",
            ("output", "prefix_colors"): "TASKLY_COLORS",
            ("output", "timestamp_format"): "TASKLY_TIMESTAMP_FORMAT",
            ("output", "separator"): "TASKLY_SEPARATOR",
            ("output", "raw"): "TASKLY_RAW",
            ("supervisor", "timeout_seconds"): "TASKLY_TIMEOUT",
            ("supervisor", "resource_policy"): "TASKLY_RESOURCE_POLICY",
            ("names",): "TASKLY_NAMES",
            ("logging_level",): "TASKLY_LOGGING_LEVEL",
        }

        for path, env_var in env_overrides.items():
            value: Any = os.environ.get(env_var)
            if value is None:
                continue

            current = config_data
            for key in path[:-1]:
                current = current.setdefault(key, {})

            if env_var.endswith(("_MISSING", "_RAW")):
                value = value.strip().lower() in TRUTHY_VALUES
            elif env_var == "TASKLY_LOGGING_LEVEL":
                value = value.strip().upper()

            current[path[-1]] = value
            logger.debug("env_override_applied", env_var=env_var, config_path=".".join(path))

        # Legacy boolean form kept for compatibility with older setups
        kill_on_fail = os.environ.get("TASKLY_KILL_OTHERS_ON_FAIL")
        if kill_on_fail is not None and kill_on_fail.strip().lower() in TRUTHY_VALUES:
            policy = config_data.setdefault("policy", {})
            triggers = set(_split_csv(policy.get("kill_others_on") or []))
            triggers.add("failure")
            policy["kill_others_on"] = sorted(triggers)

        verbose = os.environ.get("TASKLY_VERBOSE")
        if (
            verbose is not None
            and verbose.strip().lower() in TRUTHY_VALUES
            and "TASKLY_LOGGING_LEVEL" not in os.environ
        ):
            config_data["logging_level"] = "DEBUG"

        return config_data

    def validate_config(self) -> list[str]:
        """Validate configuration and return list of warnings.

        Returns:
            List of validation warning messages (empty if no warnings)
        """
        warnings = []

        if self.policy.max_processes > HIGH_CONCURRENCY_THRESHOLD:
            warnings.append(
                f"max_processes is high ({self.policy.max_processes}) - monitor resource usage",
            )

        if self.supervisor.timeout_seconds > HIGH_TIMEOUT_THRESHOLD:
            warnings.append(
                f"Task timeout is high ({self.supervisor.timeout_seconds}s) - "
                "tasks may run for extended periods",
            )

        if self.policy.success_condition != "all" and not self.policy.kill_others_on:
            warnings.append(
                f"success_condition '{self.policy.success_condition}' without kill_others_on "
                "still waits for every task to finish",
            )

        if self.supervisor.resource_policy == "kill" and self.supervisor.resource_check_interval == 0:
            warnings.append("resource_policy 'kill' has no effect with resource checks disabled")

        return warnings


def find_config_file(cwd: str | Path | None = None) -> Path | None:
    """Return the first default configuration file present in ``cwd``."""
    base = Path(cwd) if cwd else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def load_config(config_path: str | Path | None = None, cwd: str | Path | None = None) -> TasklyConfig:
    """Load configuration from a file, ``TASKLY_CONFIG`` or auto-discovery.

    When no file is given or found, defaults with environment overrides are
    returned.

    Args:
        config_path: Explicit configuration file
        cwd: Directory searched for default configuration file names

    Returns:
        Loaded TasklyConfig instance

    Raises:
        ConfigurationError: If an explicitly requested file is missing or invalid
    """
    if config_path is None:
        config_path = os.environ.get("TASKLY_CONFIG") or find_config_file(cwd)

    if config_path is None:
        return TasklyConfig.from_mapping({})

    return TasklyConfig.from_file(config_path)


__all__ = [
    "OutputConfig",
    "RunPolicy",
    "SupervisorConfig",
    "TaskDescription",
    "TasklyConfig",
    "find_config_file",
    "load_config",
]

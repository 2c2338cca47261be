"""Configuration loading for the deployment supervisor.

Precedence (later wins):
1. Defaults on DeployConfig
2. .autodeploy/config.yaml
3. Environment: OWNER, REPO, BRANCH, GITHUB_TOKEN
4. Explicit overrides (CLI options)
"""

from __future__ import annotations

import json
import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_DIR = ".autodeploy"
CONFIG_FILE = "config.yaml"

# Environment variable -> config key
ENV_OVERRIDES = {
    "OWNER": "owner",
    "REPO": "repo",
    "BRANCH": "branch",
    "GITHUB_TOKEN": "token",
}

# Supervisor credentials never handed to the managed process
SECRET_ENV_VARS = frozenset({"GITHUB_TOKEN"})


class ConfigError(Exception):
    """Configuration is missing or invalid. Fatal at startup."""

    pass


class DeployConfig(BaseModel):
    """Recognized options for one supervised deployment."""

    owner: str
    repo: str
    branch: str = "main"
    token: str = Field(default="", repr=False)

    poll_interval_ms: int = Field(default=60_000, ge=1_000)
    entry_point_default: str = "index"

    env: dict[str, str] = Field(default_factory=dict)
    env_file: Path | None = None
    inherit_env: bool = True

    protected_paths: list[str] = Field(default_factory=lambda: ["_DONT_DELETE"])
    workspace: Path = Path("repo")

    build_command: list[str] = Field(default_factory=lambda: ["npm", "run", "build"])
    run_command: list[str] = Field(default_factory=lambda: ["node"])
    build_timeout: float = Field(default=600, gt=0)
    terminate_timeout: float = Field(default=10, gt=0)
    unkillable_wait: float = Field(default=5, ge=0)

    api_url: str = "https://api.github.com"
    request_timeout: float = Field(default=30, gt=0)

    @field_validator("owner", "repo", "branch")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("build_command", "run_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("build_command", "run_command")
    @classmethod
    def _command_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("command must not be empty")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000

    def process_env(self) -> dict[str, str]:
        """Environment handed to the managed process.

        The inherited base never carries the GitHub token, whatever variable
        holds it.
        """
        base = {}
        if self.inherit_env:
            base = {
                key: value
                for key, value in os.environ.items()
                if key not in SECRET_ENV_VARS and not (self.token and value == self.token)
            }
        return {**base, **self.env}


def config_path(project_dir: Path) -> Path:
    return project_dir / CONFIG_DIR / CONFIG_FILE


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file '{path}': {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid YAML content in '{path}'. Expected a mapping, got {type(data).__name__}."
        )
    return data


def _load_env_file(path: Path) -> dict[str, str]:
    """Load the managed process environment from a JSON object file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"env_file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read env_file '{path}': {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"env_file '{path}' must contain a JSON object")
    return {str(k): str(v) for k, v in data.items()}


def load_config(
    project_dir: Path,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    require_token: bool = True,
) -> DeployConfig:
    """Assemble DeployConfig from file, environment and overrides.

    Relative workspace/env_file paths are resolved against project_dir.

    Raises:
        ConfigError: On unreadable files, validation errors or missing token
    """
    project_dir = Path(project_dir)
    environ = os.environ if environ is None else environ

    raw = _load_yaml(config_path(project_dir))
    for var, key in ENV_OVERRIDES.items():
        if environ.get(var):
            raw[key] = environ[var]
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    try:
        config = DeployConfig(**raw)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

    if require_token and not config.token:
        raise ConfigError("GITHUB_TOKEN environment variable not set.")

    if not config.workspace.is_absolute():
        config.workspace = project_dir / config.workspace

    if config.env_file is not None:
        env_file = config.env_file if config.env_file.is_absolute() else project_dir / config.env_file
        config.env = {**_load_env_file(env_file), **config.env}

    return config

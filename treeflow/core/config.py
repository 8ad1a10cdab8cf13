"""Engine configuration and workflow definition files.

Both are YAML, parsed with yaml.safe_load and validated with Pydantic.
"""

import uuid
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from treeflow.agent.spawner import DEFAULT_AGENT_COMMAND
from treeflow.core.models import Workflow, WorkflowStep

CONFIG_DIR = ".treeflow"
CONFIG_FILE = "config.yaml"


class ConfigError(Exception):
    """Invalid configuration or workflow file."""

    pass


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WorktreeSettings(_Section):
    base_dir: str = ".worktrees"
    branch_prefix: str = "task/"
    git_timeout: int = Field(default=30, gt=0)


class AgentSettings(_Section):
    command: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND), min_length=1)
    model_flag: str | None = "--model"
    session_flag: str | None = "--session-id"
    default_timeout: float | None = Field(default=300, gt=0)
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)
    grace_period: float = Field(default=5.0, ge=0)


class ExecutorSettings(_Section):
    max_concurrency: int = Field(default=3, ge=1)
    default_max_retries: int = Field(default=2, ge=0)
    retry_initial_delay: float = Field(default=2.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=60.0, ge=0)
    merge_on_success: bool = False
    remove_on_merge: bool = True
    commit_on_complete: bool = True


class LoggingSettings(_Section):
    level: str = "WARNING"


class EngineConfig(_Section):
    """Contents of .treeflow/config.yaml."""

    worktrees: WorktreeSettings = Field(default_factory=WorktreeSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping with proper error handling."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def config_path(repo_path: Path) -> Path:
    return Path(repo_path) / CONFIG_DIR / CONFIG_FILE


def load_config(repo_path: Path) -> EngineConfig:
    """Load the engine config for a repository; defaults when the file is absent."""
    path = config_path(repo_path)
    if not path.exists():
        return EngineConfig()
    try:
        return EngineConfig.model_validate(_load_yaml(path))
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}")


def default_config_yaml() -> str:
    """YAML text of the default config, as written by `treeflow init`."""
    return yaml.safe_dump(EngineConfig().model_dump(), sort_keys=False)


class _StepDefinition(_Section):
    id: str
    prompt: str
    agent: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    timeout: float | None = None
    max_retries: int | None = None


class _WorkflowDefinition(_Section):
    name: str = ""
    id: str | None = None
    branch: str | None = None
    base_ref: str = "HEAD"
    target_branch: str | None = None
    steps: list[_StepDefinition] = Field(min_length=1)


def load_workflow(path: Path, config: EngineConfig | None = None) -> Workflow:
    """Parse a workflow definition file into a Workflow.

    Step retry budgets and timeouts fall back to the engine config.
    """
    config = config or EngineConfig()
    path = Path(path)
    try:
        definition = _WorkflowDefinition.model_validate(_load_yaml(path))
        steps = [
            WorkflowStep(
                id=step.id,
                prompt=step.prompt,
                agent=step.agent,
                depends_on=step.depends_on,
                timeout=step.timeout if step.timeout is not None else config.agent.default_timeout,
                max_retries=(
                    step.max_retries
                    if step.max_retries is not None
                    else config.executor.default_max_retries
                ),
            )
            for step in definition.steps
        ]
    except ValidationError as e:
        raise ConfigError(f"Invalid workflow definition in {path}: {e}")

    name = definition.name or path.stem
    return Workflow(
        id=definition.id or f"{name}-{uuid.uuid4().hex[:8]}",
        name=name,
        steps=steps,
        branch=definition.branch,
        base_ref=definition.base_ref,
        target_branch=definition.target_branch,
    )

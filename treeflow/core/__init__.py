"""Core engine: worktrees, merging, step graphs, and workflow execution."""

from treeflow.core.executor import RetryPolicy, WorkflowExecutor
from treeflow.core.git import GitError, GitGateway
from treeflow.core.merge import MergeResolver, MergeTransaction
from treeflow.core.models import (
    ConflictResolution,
    MergeConflict,
    MergeResolution,
    MergeResult,
    MergeStatus,
    ResolutionStrategy,
    StepStatus,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
    Worktree,
    WorktreeConfig,
    WorktreeStatus,
)
from treeflow.core.workspace import WorktreeManager, WorktreeRegistry

__all__ = [
    "ConflictResolution",
    "GitError",
    "GitGateway",
    "MergeConflict",
    "MergeResolution",
    "MergeResolver",
    "MergeResult",
    "MergeStatus",
    "MergeTransaction",
    "ResolutionStrategy",
    "RetryPolicy",
    "StepStatus",
    "Workflow",
    "WorkflowExecutor",
    "WorkflowStatus",
    "WorkflowStep",
    "Worktree",
    "WorktreeConfig",
    "WorktreeManager",
    "WorktreeRegistry",
    "WorktreeStatus",
]

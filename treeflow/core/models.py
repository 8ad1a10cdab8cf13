"""Data models for the worktree/workflow engine.

Uses Pydantic so records validate on construction and serialize cleanly
into the event log.
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# --- Worktrees ---


class WorktreeStatus(str, Enum):
    """Lifecycle status of an isolated checkout."""

    ACTIVE = "active"
    STALE = "stale"  # Known to git or disk but not to the registry (or vice versa)
    REMOVED = "removed"


class Worktree(BaseModel):
    """An isolated checkout bound to exactly one branch."""

    path: Path
    branch: str
    base_ref: str
    base_commit: str
    target_branch: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    status: WorktreeStatus = WorktreeStatus.ACTIVE


class WorktreeConfig(BaseModel):
    """Request to create a worktree.

    path_hint defaults to the branch name. target_branch is the branch the
    worktree's work will be integrated into; when omitted, the branch checked
    out in the main repository at creation time is used.
    """

    branch: str = Field(min_length=1)
    base_ref: str = "HEAD"
    path_hint: str | None = None
    target_branch: str | None = None


# --- Steps and workflows ---


class StepStatus(str, Enum):
    """Status of a workflow step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# failed -> running is the retry edge; failed -> cancelled covers a
# cancellation that lands while a retry is backing off.
STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.CANCELLED}
    ),
    StepStatus.RUNNING: frozenset(
        {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.CANCELLED}
    ),
    StepStatus.FAILED: frozenset({StepStatus.RUNNING, StepStatus.CANCELLED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(Exception):
    """A step was asked to move along an edge its state machine forbids."""

    pass


class WorkflowStep(BaseModel):
    """One unit of agent work."""

    id: str = Field(min_length=1)
    prompt: str
    agent: str | None = None  # Model selector passed to the agent CLI
    depends_on: list[str] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int = Field(default=2, ge=0)

    # Runtime state
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: str | None = None
    output: str = ""
    exit_code: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition(self, new_status: StepStatus) -> None:
        """Move to new_status, enforcing the step state machine."""
        if new_status not in STEP_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Step '{self.id}': {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status

    @property
    def retries_left(self) -> int:
        """Retry budget remaining. The first attempt is not a retry."""
        return max(0, self.max_retries + 1 - self.attempts)

    @property
    def is_terminal(self) -> bool:
        if self.status == StepStatus.FAILED:
            return self.retries_left == 0
        return self.status in (
            StepStatus.COMPLETED,
            StepStatus.SKIPPED,
            StepStatus.CANCELLED,
        )


class WorkflowStatus(str, Enum):
    """Overall status of a workflow."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Workflow(BaseModel):
    """A graph of steps executed against one worktree."""

    id: str
    name: str = ""
    steps: list[WorkflowStep]
    branch: str | None = None  # Branch to create the worktree on
    base_ref: str = "HEAD"
    target_branch: str | None = None
    worktree: Worktree | None = None
    status: WorkflowStatus = WorkflowStatus.CREATED
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    merge_result: "MergeResult | None" = None

    def get_step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def failed_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def skipped_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.status == StepStatus.SKIPPED]

    def failure_report(self) -> dict[str, str]:
        """Map every failed or skipped step to its last error."""
        report: dict[str, str] = {}
        for step in self.steps:
            if step.status in (StepStatus.FAILED, StepStatus.SKIPPED):
                report[step.id] = step.error or step.status.value
        return report


# --- Merging ---


class ConflictMarkers(BaseModel):
    """1-based line numbers of the conflict markers in the merged file."""

    start: int  # <<<<<<<
    middle: int  # =======
    end: int  # >>>>>>>


class MergeConflict(BaseModel):
    """A single region where the worktree branch and its target diverge.

    Files that conflict without text markers (modify/delete, binary) are
    reported as one whole-file conflict with markers set to None; the
    *_deleted flags say which side removed the file.
    """

    path: str  # Repository-relative
    index: int  # Ordinal of the region within the file, starting at 0
    source: str  # Worktree side
    target: str  # Integration target side
    base: str | None = None  # Common ancestor, when git could provide it
    markers: ConflictMarkers | None = None
    source_deleted: bool = False
    target_deleted: bool = False

    @property
    def conflict_id(self) -> str:
        return f"{self.path}:{self.index}"


class ResolutionStrategy(str, Enum):
    """How a conflict region should be settled."""

    TAKE_SOURCE = "take-source"
    TAKE_TARGET = "take-target"
    CUSTOM = "custom"


class ConflictResolution(BaseModel):
    """Caller's decision for one conflict region."""

    strategy: ResolutionStrategy
    content: str | None = None

    @model_validator(mode="after")
    def _content_matches_strategy(self) -> "ConflictResolution":
        if self.strategy == ResolutionStrategy.CUSTOM and self.content is None:
            raise ValueError("custom resolution requires content")
        return self


class MergeResolution(BaseModel):
    """Resolutions for the conflicts of one merge attempt, keyed by conflict id."""

    worktree_path: Path
    resolutions: dict[str, ConflictResolution] = Field(default_factory=dict)
    message: str | None = None


class MergeStatus(str, Enum):
    """Outcome of an integration attempt."""

    MERGED_CLEAN = "merged-clean"
    MERGED_WITH_RESOLUTIONS = "merged-with-resolutions"
    ABORTED = "aborted"
    CONFLICTS_PENDING = "conflicts-pending"


class MergeResult(BaseModel):
    """Outcome of an integration attempt."""

    status: MergeStatus
    commit: str | None = None
    conflicts: list[MergeConflict] = Field(default_factory=list)
    message: str = ""


Workflow.model_rebuild()

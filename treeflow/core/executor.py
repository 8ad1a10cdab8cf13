"""Workflow execution: drive each step through its state machine.

A workflow runs in one worktree. Its steps form a DAG; every step whose
dependencies have completed is dispatched to a thread pool (bounded by an
executor-wide concurrency limit) where it runs one agent process. The
dispatch loop never blocks on a single step: it reacts to completions,
schedules retries with backoff, propagates skips, and observes
cancellation.
"""

import logging
import random
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from treeflow.agent.spawner import AgentConfig, AgentResult, OutputChunk, Spawner, SpawnFailedError
from treeflow.core.git import GitError
from treeflow.core.merge import MergeError, MergeResolver
from treeflow.core.models import (
    MergeStatus,
    StepStatus,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
    WorktreeConfig,
    _utc_now,
)
from treeflow.core.scheduler import StepGraph
from treeflow.core.state import Database, Event, EventType
from treeflow.core.workspace import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

# How long the dispatch loop waits for a completion before re-checking
# cancellation and retry deadlines
POLL_INTERVAL = 0.2

StepOutputCallback = Callable[[str, str, OutputChunk], None]


class ExecutorError(Exception):
    """Error in workflow execution."""

    pass


class WorkflowNotFoundError(ExecutorError):
    """No workflow with the given id was submitted to this executor."""

    pass


@dataclass
class RetryPolicy:
    """Configuration for retry backoff between attempts of a step."""

    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before retrying after the given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


@dataclass
class _Attempt:
    step_id: str
    number: int
    cancel_event: threading.Event = field(default_factory=threading.Event)
    timed_out: threading.Event = field(default_factory=threading.Event)
    timeout: float | None = None


@dataclass
class _Run:
    """Live state of one workflow owned by the executor."""

    workflow: Workflow
    graph: StepGraph
    workdir: Path
    owns_worktree: bool
    holds_worktree: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)
    attempts: dict[str, _Attempt] = field(default_factory=dict)
    thread: threading.Thread | None = None


class WorkflowExecutor:
    """Run workflows of agent steps inside isolated worktrees."""

    def __init__(
        self,
        spawner: Spawner,
        manager: WorktreeManager | None = None,
        resolver: MergeResolver | None = None,
        db: Database | None = None,
        max_concurrency: int = 3,
        retry_policy: RetryPolicy | None = None,
        default_timeout: float | None = None,
        merge_on_success: bool = False,
        remove_on_merge: bool = True,
        commit_on_complete: bool = True,
        on_output: StepOutputCallback | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.spawner = spawner
        self.manager = manager
        self.resolver = resolver
        if self.resolver is None and manager is not None and merge_on_success:
            self.resolver = MergeResolver(manager)
        self.db = db if db is not None else (manager.db if manager else None)
        self.max_concurrency = max_concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_timeout = default_timeout
        self.merge_on_success = merge_on_success
        self.remove_on_merge = remove_on_merge
        self.commit_on_complete = commit_on_complete
        self.on_output = on_output

        # Executor-wide limit shared by every workflow
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._runs: dict[str, _Run] = {}
        self._starting: set[str] = set()
        self._runs_lock = threading.Lock()

    # --- Public API ---

    @staticmethod
    def validate(workflow: Workflow) -> StepGraph:
        """Build the step graph, raising SchedulerError for invalid definitions."""
        return StepGraph(workflow.steps)

    def run(self, workflow: Workflow) -> Workflow:
        """Execute a workflow to completion and return its final state.

        Raises:
            SchedulerError: Cyclic, duplicate, or unknown dependencies.
            WorktreeError: The worktree could not be created.
            WorktreeBusyError: Another workflow or merge is using the worktree.
        """
        run = self._start(workflow)
        self._execute(run)
        return self._snapshot(run)

    def submit(self, workflow: Workflow) -> str:
        """Start a workflow in the background and return its id immediately.

        Configuration errors are raised here, before anything runs.
        """
        run = self._start(workflow)
        run.thread = threading.Thread(
            target=self._execute, args=(run,), name=f"workflow-{run.workflow.id}", daemon=True
        )
        run.thread.start()
        return run.workflow.id

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Point-in-time copy of a workflow's state, or None if unknown."""
        with self._runs_lock:
            run = self._runs.get(workflow_id)
        return self._snapshot(run) if run else None

    def wait(self, workflow_id: str, timeout: float | None = None) -> Workflow:
        """Block until the workflow finishes (or timeout) and return its state."""
        run = self._get_run(workflow_id)
        run.done_event.wait(timeout)
        return self._snapshot(run)

    def cancel(self, workflow_id: str) -> bool:
        """Request cancellation. Returns False if the workflow already finished.

        Pending steps become cancelled at once; running agents are asked to
        terminate. Completed steps are left as they are.
        """
        run = self._get_run(workflow_id)
        with run.lock:
            if run.done_event.is_set():
                return False
            run.cancel_event.set()
            self._cancel_pending(run)
            for attempt in run.attempts.values():
                attempt.cancel_event.set()
        logger.info(f"Cancellation requested for workflow {workflow_id}")
        return True

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every live workflow and wait for them to finish."""
        with self._runs_lock:
            runs = list(self._runs.values())
        for run in runs:
            if not run.done_event.is_set():
                self.cancel(run.workflow.id)
        for run in runs:
            run.done_event.wait(timeout)

    # --- Setup ---

    def _get_run(self, workflow_id: str) -> _Run:
        with self._runs_lock:
            run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(f"Unknown workflow: {workflow_id}")
        return run

    def _snapshot(self, run: _Run) -> Workflow:
        with run.lock:
            return run.workflow.model_copy(deep=True)

    def _start(self, workflow: Workflow) -> _Run:
        workflow = workflow.model_copy(deep=True)
        # The graph holds the same step objects as workflow.steps
        graph = self.validate(workflow)

        with self._runs_lock:
            if workflow.id in self._runs or workflow.id in self._starting:
                raise ExecutorError(f"Workflow '{workflow.id}' was already submitted")
            self._starting.add(workflow.id)

        try:
            workdir, owns = self._prepare_worktree(workflow)
            workflow.status = WorkflowStatus.RUNNING
            workflow.started_at = _utc_now()
            holds = self.manager is not None and self.manager.get_info(workdir) is not None
            if holds:
                # Held until the steps finish, released in _execute
                self.manager.hold(workdir)
            run = _Run(
                workflow=workflow,
                graph=graph,
                workdir=workdir,
                owns_worktree=owns,
                holds_worktree=holds,
            )
            with self._runs_lock:
                self._runs[workflow.id] = run
        finally:
            with self._runs_lock:
                self._starting.discard(workflow.id)

        self._record(
            EventType.WORKFLOW_STARTED,
            workflow.id,
            worktree_path=str(workdir),
            name=workflow.name,
            branch=workflow.worktree.branch if workflow.worktree else workflow.branch,
            steps=graph.topological_order(),
        )
        logger.info(
            f"Workflow {workflow.id} started with {len(graph)} steps in {workdir}"
        )
        return run

    def _prepare_worktree(self, workflow: Workflow) -> tuple[Path, bool]:
        if workflow.worktree is not None:
            path = Path(workflow.worktree.path)
            if not path.is_dir():
                raise ExecutorError(f"Worktree path does not exist: {path}")
            return path, False
        if self.manager is None:
            raise ExecutorError(
                f"Workflow '{workflow.id}' has no worktree and no WorktreeManager was given"
            )
        branch = workflow.branch or f"workflow-{workflow.id}"
        worktree = self.manager.create(
            WorktreeConfig(
                branch=branch,
                base_ref=workflow.base_ref,
                target_branch=workflow.target_branch,
            )
        )
        workflow.worktree = worktree
        workflow.branch = worktree.branch
        return Path(worktree.path), True

    # --- Dispatch loop ---

    def _execute(self, run: _Run) -> None:
        try:
            try:
                self._drive(run)
            finally:
                if run.holds_worktree:
                    self.manager.release(run.workdir)
            self._finish(run)
            if run.workflow.status == WorkflowStatus.COMPLETED:
                committed = not self.commit_on_complete or self._commit_changes(run)
                if self.merge_on_success and committed:
                    self._integrate(run)
        except Exception as e:
            logger.exception(f"Workflow {run.workflow.id} crashed")
            with run.lock:
                run.workflow.status = WorkflowStatus.FAILED
                run.workflow.error = f"Executor error: {e}"
                run.workflow.ended_at = _utc_now()
            self._record(EventType.WORKFLOW_FAILED, run.workflow.id, error=run.workflow.error)
        finally:
            run.done_event.set()

    def _drive(self, run: _Run) -> None:
        """Dispatch eligible steps until nothing is running or waiting to retry."""
        graph = run.graph
        active: dict[Future, _Attempt] = {}
        retry_at: dict[str, float] = {}

        pool = ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix=f"wf-{run.workflow.id}",
        )
        try:
            while True:
                with run.lock:
                    if run.cancel_event.is_set():
                        self._cancel_pending(run)
                        for step_id in list(retry_at):
                            self._set_status(
                                run, graph[step_id], StepStatus.CANCELLED, "Workflow cancelled"
                            )
                        retry_at.clear()
                    else:
                        self._dispatch(run, pool, active, retry_at)
                    # Ready steps can be left waiting for a slot held by another workflow
                    waiting = bool(graph.ready())

                if not active and not retry_at and not waiting:
                    break

                if active:
                    done, _ = wait(
                        list(active), timeout=self._next_wake(retry_at), return_when=FIRST_COMPLETED
                    )
                else:
                    run.cancel_event.wait(self._next_wake(retry_at))
                    done = set()

                for future in done:
                    attempt = active.pop(future)
                    self._slots.release()
                    self._complete_attempt(run, attempt, future, retry_at)
        finally:
            pool.shutdown(wait=True)

    @staticmethod
    def _next_wake(retry_at: dict[str, float]) -> float:
        if not retry_at:
            return POLL_INTERVAL
        return max(0.05, min(POLL_INTERVAL, min(retry_at.values()) - time.monotonic()))

    def _dispatch(
        self,
        run: _Run,
        pool: ThreadPoolExecutor,
        active: dict[Future, _Attempt],
        retry_at: dict[str, float],
    ) -> None:
        """Start every eligible step there is a slot for. Caller holds run.lock."""
        now = time.monotonic()
        due = [run.graph[sid] for sid, at in sorted(retry_at.items(), key=lambda kv: kv[1]) if at <= now]
        for step in due + run.graph.ready():
            if len(active) >= self.max_concurrency:
                return
            if not self._slots.acquire(blocking=False):
                return
            retry_at.pop(step.id, None)
            attempt = self._begin_attempt(run, step)
            future = pool.submit(self._run_attempt, run, attempt, step.prompt, step.agent)
            active[future] = attempt

    def _begin_attempt(self, run: _Run, step: WorkflowStep) -> _Attempt:
        self._set_status(run, step, StepStatus.RUNNING)
        step.attempts += 1
        step.output = ""
        step.exit_code = None
        if step.started_at is None:
            step.started_at = _utc_now()
        attempt = _Attempt(
            step_id=step.id,
            number=step.attempts,
            timeout=step.timeout or self.default_timeout,
        )
        run.attempts[step.id] = attempt
        self._record(
            EventType.STEP_STARTED, run.workflow.id, step_id=step.id, attempt=attempt.number
        )
        logger.info(f"Step {step.id} started (attempt {attempt.number}/{step.max_retries + 1})")
        return attempt

    # --- Attempts (worker threads) ---

    def _run_attempt(
        self, run: _Run, attempt: _Attempt, prompt: str, model: str | None
    ) -> AgentResult:
        config = AgentConfig(
            prompt=prompt,
            workdir=run.workdir,
            session_id=str(uuid.uuid4()),
            model=model,
            timeout=attempt.timeout,
        )

        def forward(chunk: OutputChunk) -> None:
            with run.lock:
                run.graph[attempt.step_id].output += chunk.text
            if self.on_output is not None:
                self.on_output(run.workflow.id, attempt.step_id, chunk)

        timer = None
        if attempt.timeout:
            timer = threading.Timer(attempt.timeout, self._expire, args=(attempt,))
            timer.daemon = True
            timer.start()
        try:
            return self.spawner.spawn(config, on_output=forward, cancel_event=attempt.cancel_event)
        finally:
            if timer is not None:
                timer.cancel()

    @staticmethod
    def _expire(attempt: _Attempt) -> None:
        logger.warning(f"Step {attempt.step_id} exceeded its {attempt.timeout}s timeout")
        attempt.timed_out.set()
        attempt.cancel_event.set()

    # --- Classification ---

    def _complete_attempt(
        self,
        run: _Run,
        attempt: _Attempt,
        future: Future,
        retry_at: dict[str, float],
    ) -> None:
        result: AgentResult | None = None
        error: str | None = None
        try:
            result = future.result()
        except SpawnFailedError as e:
            error = f"Spawn failed: {e}"
        except Exception as e:
            logger.exception(f"Step {attempt.step_id} attempt {attempt.number} raised")
            error = f"{type(e).__name__}: {e}"

        with run.lock:
            step = run.graph[attempt.step_id]
            run.attempts.pop(step.id, None)
            if result is not None:
                step.output = result.stdout
                step.exit_code = result.exit_code

            timed_out = attempt.timed_out.is_set() or (result is not None and result.timed_out)
            succeeded = (
                result is not None
                and result.exit_code == 0
                and not result.cancelled
                and not timed_out
            )

            if succeeded:
                self._set_status(run, step, StepStatus.COMPLETED)
                step.error = None
                step.completed_at = _utc_now()
                self._record(
                    EventType.STEP_COMPLETED,
                    run.workflow.id,
                    step_id=step.id,
                    exit_code=result.exit_code,
                    output=step.output,
                    duration_seconds=result.duration_seconds,
                )
                logger.info(f"Step {step.id} completed in {result.duration_seconds:.1f}s")
                return

            if run.cancel_event.is_set() and not timed_out:
                self._set_status(run, step, StepStatus.CANCELLED, "Workflow cancelled")
                step.completed_at = _utc_now()
                return

            if error is None:
                if timed_out:
                    error = f"Timed out after {attempt.timeout}s"
                else:
                    error = f"Exit code {result.exit_code}"
                    tail = result.stderr.strip()[-500:]
                    if tail:
                        error += f": {tail}"
            self._fail_attempt(run, step, error, retry_at)

    def _fail_attempt(
        self, run: _Run, step: WorkflowStep, error: str, retry_at: dict[str, float]
    ) -> None:
        step.transition(StepStatus.FAILED)
        step.error = error
        terminal = step.retries_left == 0 or run.cancel_event.is_set()
        self._record(
            EventType.STEP_FAILED,
            run.workflow.id,
            step_id=step.id,
            error=error,
            exit_code=step.exit_code,
            attempt=step.attempts,
            terminal=terminal,
        )

        if run.cancel_event.is_set():
            self._set_status(run, step, StepStatus.CANCELLED, "Workflow cancelled")
            return

        if not terminal:
            delay = self.retry_policy.get_delay(step.attempts - 1)
            retry_at[step.id] = time.monotonic() + delay
            self._record(
                EventType.STEP_RETRIED,
                run.workflow.id,
                step_id=step.id,
                attempt=step.attempts,
                delay=delay,
            )
            logger.warning(
                f"Step {step.id} attempt {step.attempts} failed ({error}); "
                f"retrying in {delay:.1f}s ({step.retries_left} left)"
            )
            return

        step.completed_at = _utc_now()
        logger.error(f"Step {step.id} failed after {step.attempts} attempt(s): {error}")
        for dependent_id in run.graph.transitive_dependents(step.id):
            dependent = run.graph[dependent_id]
            if dependent.status == StepStatus.PENDING:
                self._set_status(
                    run, dependent, StepStatus.SKIPPED, f"Dependency '{step.id}' failed"
                )

    def _cancel_pending(self, run: _Run) -> None:
        for step in run.workflow.steps:
            if step.status == StepStatus.PENDING:
                self._set_status(run, step, StepStatus.CANCELLED, "Workflow cancelled")

    def _set_status(
        self, run: _Run, step: WorkflowStep, status: StepStatus, error: str | None = None
    ) -> None:
        step.transition(status)
        if error is not None:
            step.error = error
        event_type = {
            StepStatus.SKIPPED: EventType.STEP_SKIPPED,
            StepStatus.CANCELLED: EventType.STEP_CANCELLED,
        }.get(status)
        if event_type is not None:
            self._record(event_type, run.workflow.id, step_id=step.id, error=error)

    # --- Completion ---

    def _finish(self, run: _Run) -> None:
        workflow = run.workflow
        with run.lock:
            if all(s.status == StepStatus.COMPLETED for s in workflow.steps):
                workflow.status = WorkflowStatus.COMPLETED
                event_type = EventType.WORKFLOW_COMPLETED
            elif run.cancel_event.is_set():
                workflow.status = WorkflowStatus.CANCELLED
                workflow.error = "Workflow cancelled"
                event_type = EventType.WORKFLOW_CANCELLED
            else:
                workflow.status = WorkflowStatus.FAILED
                report = workflow.failure_report()
                workflow.error = "; ".join(f"{sid}: {err}" for sid, err in report.items())
                event_type = EventType.WORKFLOW_FAILED
            workflow.ended_at = _utc_now()
            failed = [s.id for s in workflow.failed_steps()]
            skipped = [s.id for s in workflow.skipped_steps()]

        self._record(
            event_type,
            workflow.id,
            error=workflow.error,
            failed=failed,
            skipped=skipped,
        )
        if workflow.status == WorkflowStatus.FAILED:
            logger.error(f"Workflow {workflow.id} failed: {workflow.error}")
        else:
            logger.info(f"Workflow {workflow.id} {workflow.status.value}")

    def _commit_changes(self, run: _Run) -> bool:
        """Commit whatever the agents left uncommitted in the worktree.

        Returns False if the commit failed, in which case nothing is merged.
        """
        if self.manager is None or self.manager.get_info(run.workdir) is None:
            return True
        git = self.manager.git
        workflow = run.workflow
        try:
            if git.is_dirty(run.workdir):
                git.add_all(run.workdir)
                commit = git.commit(run.workdir, f"treeflow: {workflow.name or workflow.id}")
                logger.info(f"Committed agent changes of workflow {workflow.id} as {commit[:8]}")
        except GitError as e:
            logger.error(f"Could not commit changes of workflow {workflow.id}: {e}")
            with run.lock:
                workflow.error = f"Commit failed: {e}"
            return False
        return True

    def _integrate(self, run: _Run) -> None:
        """Route a completed workflow's worktree through the merge resolver."""
        if self.resolver is None:
            return
        workflow = run.workflow
        try:
            result = self.resolver.merge(
                run.workdir, message=f"Integrate workflow {workflow.name or workflow.id}"
            )
        except (MergeError, WorktreeError, GitError) as e:
            logger.error(f"Integration of workflow {workflow.id} failed: {e}")
            with run.lock:
                workflow.error = f"Integration failed: {e}"
            return

        with run.lock:
            workflow.merge_result = result
        if result.status == MergeStatus.CONFLICTS_PENDING:
            logger.warning(
                f"Workflow {workflow.id} completed with {len(result.conflicts)} merge conflict(s) pending"
            )
            return

        if run.owns_worktree and self.remove_on_merge and self.manager is not None:
            try:
                self.manager.remove(run.workdir)
            except WorktreeError as e:
                logger.warning(f"Could not remove worktree {run.workdir}: {e}")

    def _record(
        self,
        event_type: EventType,
        workflow_id: str,
        step_id: str | None = None,
        worktree_path: str | None = None,
        **payload: Any,
    ) -> None:
        if self.db is None:
            return
        self.db.append_event(
            Event(
                workflow_id=workflow_id,
                event_type=event_type,
                step_id=step_id,
                worktree_path=worktree_path,
                payload=payload,
            )
        )

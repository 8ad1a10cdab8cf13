"""Tests for WorkflowExecutor scheduling, retries, cancellation and integration.

Most tests run against a plain directory with the FakeSpawner double; the
integration tests at the end use a real git repository.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from conftest import FakeSpawner, block_until_cancelled, git
from treeflow.agent.spawner import AgentResult, SpawnFailedError
from treeflow.core.executor import (
    ExecutorError,
    RetryPolicy,
    WorkflowExecutor,
    WorkflowNotFoundError,
)
from treeflow.core.git import GitError
from treeflow.core.merge import MergeResolver
from treeflow.core.models import (
    MergeStatus,
    StepStatus,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
    Worktree,
    WorktreeConfig,
)
from treeflow.core.scheduler import CyclicDependencyError, DependencyNotFoundError
from treeflow.core.state import EventType
from treeflow.core.workspace import WorktreeBusyError, WorktreeManager

FAST_RETRY = RetryPolicy(initial_delay=0.01, max_delay=0.05, jitter=0)


def step(step_id: str, *deps: str, **kwargs) -> WorkflowStep:
    return WorkflowStep(id=step_id, prompt=f"do {step_id}", depends_on=list(deps), **kwargs)


def make_workflow(workdir: Path, *steps: WorkflowStep, workflow_id: str = "wf-1") -> Workflow:
    return Workflow(
        id=workflow_id,
        name="test",
        steps=list(steps),
        worktree=Worktree(
            path=workdir, branch="test", base_ref="HEAD", base_commit="0" * 40
        ),
    )


def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


@pytest.fixture
def executor(fake_spawner, test_db) -> WorkflowExecutor:
    return WorkflowExecutor(fake_spawner, db=test_db, retry_policy=FAST_RETRY)


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(initial_delay=1, backoff_multiplier=2, max_delay=5, jitter=0)
        assert [policy.get_delay(n) for n in range(4)] == [1, 2, 4, 5]

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=10, jitter=0.1)
        for _ in range(20):
            assert 9 <= policy.get_delay(0) <= 11


class TestScheduling:
    def test_dependencies_run_in_order(self, executor, fake_spawner, tmp_path):
        result = executor.run(make_workflow(tmp_path, step("c", "b"), step("b", "a"), step("a")))

        assert result.status == WorkflowStatus.COMPLETED
        assert fake_spawner.prompts() == ["do a", "do b", "do c"]
        assert all(s.status == StepStatus.COMPLETED for s in result.steps)
        assert result.get_step("a").output == "ran do a\n"
        assert result.get_step("a").exit_code == 0

    def test_independent_steps_run_concurrently(self, test_db, tmp_path):
        spawner = FakeSpawner(delay=0.2)
        executor = WorkflowExecutor(spawner, db=test_db, max_concurrency=2)
        result = executor.run(make_workflow(tmp_path, step("a"), step("b"), step("c"), step("d")))

        assert result.status == WorkflowStatus.COMPLETED
        assert spawner.max_running == 2

    def test_concurrency_limit_shared_across_workflows(self, test_db, tmp_path):
        spawner = FakeSpawner(delay=0.05)
        executor = WorkflowExecutor(spawner, db=test_db, max_concurrency=1)
        first = executor.submit(make_workflow(tmp_path, step("a"), step("b"), workflow_id="wf-1"))
        second = executor.submit(make_workflow(tmp_path, step("a"), step("b"), workflow_id="wf-2"))

        assert executor.wait(first, timeout=10).status == WorkflowStatus.COMPLETED
        assert executor.wait(second, timeout=10).status == WorkflowStatus.COMPLETED
        assert spawner.max_running == 1
        assert len(spawner.calls) == 4

    def test_each_attempt_gets_fresh_session(self, executor, fake_spawner, tmp_path):
        executor.run(make_workflow(tmp_path, step("a"), step("b")))
        sessions = {c.session_id for c in fake_spawner.calls}
        assert len(sessions) == 2
        assert all(Path(c.workdir) == tmp_path for c in fake_spawner.calls)

    def test_agent_selector_passed_as_model(self, executor, fake_spawner, tmp_path):
        executor.run(make_workflow(tmp_path, step("a", agent="opus")))
        assert fake_spawner.calls[0].model == "opus"

    def test_output_callback(self, fake_spawner, test_db, tmp_path):
        seen: list[tuple[str, str, str]] = []
        executor = WorkflowExecutor(
            fake_spawner,
            db=test_db,
            on_output=lambda wf, sid, chunk: seen.append((wf, sid, chunk.text)),
        )
        executor.run(make_workflow(tmp_path, step("a")))
        assert seen == [("wf-1", "a", "ran do a\n")]


class TestValidation:
    def test_cycle_rejected_before_running(self, executor, fake_spawner, tmp_path):
        with pytest.raises(CyclicDependencyError):
            executor.run(make_workflow(tmp_path, step("a", "b"), step("b", "a")))
        assert fake_spawner.calls == []

    def test_unknown_dependency(self, executor, tmp_path):
        with pytest.raises(DependencyNotFoundError):
            executor.submit(make_workflow(tmp_path, step("a", "ghost")))

    def test_duplicate_submission(self, executor, tmp_path):
        workflow = make_workflow(tmp_path, step("a"))
        executor.run(workflow)
        with pytest.raises(ExecutorError, match="already submitted"):
            executor.run(workflow)

    def test_unknown_workflow(self, executor):
        with pytest.raises(WorkflowNotFoundError):
            executor.wait("nope")
        assert executor.get_workflow("nope") is None

    def test_missing_worktree_path(self, executor, tmp_path):
        with pytest.raises(ExecutorError, match="does not exist"):
            executor.run(make_workflow(tmp_path / "gone", step("a")))

    def test_no_worktree_and_no_manager(self, executor):
        with pytest.raises(ExecutorError, match="no WorktreeManager"):
            executor.run(Workflow(id="wf", steps=[step("a")]))

    def test_invalid_concurrency(self, fake_spawner):
        with pytest.raises(ValueError):
            WorkflowExecutor(fake_spawner, max_concurrency=0)

    def test_caller_workflow_not_mutated(self, executor, tmp_path):
        workflow = make_workflow(tmp_path, step("a"))
        executor.run(workflow)
        assert workflow.status == WorkflowStatus.CREATED
        assert workflow.steps[0].status == StepStatus.PENDING


class TestFailures:
    def test_retry_then_succeed(self, fake_spawner, executor, test_db, tmp_path):
        fake_spawner.script["do a"] = [1, 0]
        result = executor.run(make_workflow(tmp_path, step("a", max_retries=2)))

        a = result.get_step("a")
        assert result.status == WorkflowStatus.COMPLETED
        assert a.status == StepStatus.COMPLETED
        assert a.attempts == 2
        assert a.error is None
        retried = test_db.get_events("wf-1", [EventType.STEP_RETRIED])
        assert [e.step_id for e in retried] == ["a"]

    def test_exhausted_retries_skip_dependents(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [1]
        result = executor.run(
            make_workflow(
                tmp_path,
                step("a", max_retries=1),
                step("b", "a"),
                step("c", "b"),
                step("d"),
            )
        )

        assert result.status == WorkflowStatus.FAILED
        a = result.get_step("a")
        assert a.status == StepStatus.FAILED
        assert a.attempts == 2
        assert a.error == "Exit code 1: agent failed"
        assert result.get_step("b").status == StepStatus.SKIPPED
        assert result.get_step("b").error == "Dependency 'a' failed"
        assert result.get_step("c").status == StepStatus.SKIPPED
        assert result.get_step("d").status == StepStatus.COMPLETED
        assert fake_spawner.prompts().count("do b") == 0
        assert result.failure_report() == {
            "a": "Exit code 1: agent failed",
            "b": "Dependency 'a' failed",
            "c": "Dependency 'a' failed",
        }
        assert result.error.startswith("a: Exit code 1")

    def test_failed_root_skips_every_branch(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [1]
        result = executor.run(
            make_workflow(tmp_path, step("a", max_retries=0), step("b", "a"), step("c", "a"))
        )

        assert result.status == WorkflowStatus.FAILED
        assert result.get_step("b").status == StepStatus.SKIPPED
        assert result.get_step("c").status == StepStatus.SKIPPED
        assert result.get_step("b").attempts == 0
        assert result.get_step("c").attempts == 0
        assert fake_spawner.prompts() == ["do a"]

    def test_zero_retries(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [2]
        result = executor.run(make_workflow(tmp_path, step("a", max_retries=0)))
        assert result.get_step("a").attempts == 1
        assert result.status == WorkflowStatus.FAILED

    def test_spawn_failure(self, fake_spawner, executor, tmp_path):
        def fail(config, on_output, cancel_event):
            raise SpawnFailedError("agent binary missing")

        fake_spawner.script["do a"] = [fail]
        result = executor.run(make_workflow(tmp_path, step("a", max_retries=0)))
        assert result.get_step("a").error == "Spawn failed: agent binary missing"

    def test_timeout_counts_as_failure(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [block_until_cancelled]
        result = executor.run(make_workflow(tmp_path, step("a", timeout=0.2, max_retries=0)))

        a = result.get_step("a")
        assert a.status == StepStatus.FAILED
        assert a.error == "Timed out after 0.2s"

    def test_default_timeout_applies(self, fake_spawner, test_db, tmp_path):
        fake_spawner.script["do a"] = [block_until_cancelled]
        executor = WorkflowExecutor(fake_spawner, db=test_db, default_timeout=0.2)
        result = executor.run(make_workflow(tmp_path, step("a", max_retries=0)))
        assert result.get_step("a").error == "Timed out after 0.2s"


class TestCancellation:
    def test_cancel_running_workflow(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [block_until_cancelled]
        workflow_id = executor.submit(make_workflow(tmp_path, step("a"), step("b", "a")))
        wait_for(
            lambda: executor.get_workflow(workflow_id).get_step("a").status == StepStatus.RUNNING
        )

        assert executor.cancel(workflow_id)
        result = executor.wait(workflow_id, timeout=10)

        assert result.status == WorkflowStatus.CANCELLED
        assert result.get_step("a").status == StepStatus.CANCELLED
        assert result.get_step("b").status == StepStatus.CANCELLED
        assert "do b" not in fake_spawner.prompts()
        assert not executor.cancel(workflow_id)

    def test_completed_steps_stay_completed(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do b"] = [block_until_cancelled]
        workflow_id = executor.submit(make_workflow(tmp_path, step("a"), step("b", "a")))
        wait_for(
            lambda: executor.get_workflow(workflow_id).get_step("b").status == StepStatus.RUNNING
        )
        executor.cancel(workflow_id)
        result = executor.wait(workflow_id, timeout=10)

        assert result.get_step("a").status == StepStatus.COMPLETED
        assert result.get_step("b").status == StepStatus.CANCELLED

    def test_shutdown_cancels_everything(self, fake_spawner, executor, tmp_path):
        fake_spawner.script["do a"] = [block_until_cancelled]
        workflow_id = executor.submit(make_workflow(tmp_path, step("a")))
        wait_for(lambda: len(fake_spawner.calls) == 1)

        executor.shutdown(timeout=10)
        assert executor.get_workflow(workflow_id).status == WorkflowStatus.CANCELLED


class TestPersistence:
    def test_state_recorded_in_database(self, fake_spawner, executor, test_db, tmp_path):
        fake_spawner.script["do a"] = [1]
        executor.run(make_workflow(tmp_path, step("a", max_retries=0), step("b", "a"), step("c")))

        record = test_db.get_workflow("wf-1")
        assert record.status == WorkflowStatus.FAILED
        assert record.worktree_path == str(tmp_path)
        steps = {s.id: s.status for s in test_db.get_steps("wf-1")}
        assert steps == {
            "a": StepStatus.FAILED,
            "b": StepStatus.SKIPPED,
            "c": StepStatus.COMPLETED,
        }
        types = [e.event_type for e in test_db.get_events("wf-1")]
        assert types[0] == EventType.WORKFLOW_STARTED
        assert types[-1] == EventType.WORKFLOW_FAILED


# =============================================================================
# Worktree and merge integration (real git)
# =============================================================================


def write_generated(config, on_output, cancel_event) -> AgentResult:
    (Path(config.workdir) / "generated.txt").write_text("made by agent\n")
    return AgentResult(exit_code=0, stdout="wrote generated.txt\n")


@pytest.mark.git
class TestWorktreeIntegration:
    def test_creates_worktree_for_workflow(self, fake_spawner, manager, test_db):
        executor = WorkflowExecutor(fake_spawner, manager=manager, db=test_db)
        result = executor.run(Workflow(id="wf-git", name="demo", steps=[step("a")]))

        assert result.status == WorkflowStatus.COMPLETED
        assert result.worktree.branch == "workflow-wf-git"
        assert result.worktree.path.is_dir()
        assert Path(fake_spawner.calls[0].workdir) == result.worktree.path
        # The worktree is released once the workflow finishes
        assert not manager.is_busy(result.worktree.path)

    def test_merge_on_success(self, manager, test_db, repo_with_git):
        spawner = FakeSpawner({"do a": [write_generated]})
        executor = WorkflowExecutor(
            spawner, manager=manager, db=test_db, merge_on_success=True
        )
        result = executor.run(Workflow(id="wf-merge", name="demo", steps=[step("a")], branch="gen"))

        assert result.status == WorkflowStatus.COMPLETED
        assert result.merge_result.status == MergeStatus.MERGED_CLEAN
        assert (repo_with_git / "generated.txt").read_text() == "made by agent\n"
        assert git(repo_with_git, "rev-parse", "main") == result.merge_result.commit
        # Owned worktree is removed after a successful merge
        assert not result.worktree.path.exists()
        assert manager.get_info(result.worktree.path) is None

    def test_agent_edits_committed_without_merge(self, manager, test_db, repo_with_git):
        spawner = FakeSpawner({"do a": [write_generated]})
        executor = WorkflowExecutor(spawner, manager=manager, db=test_db)
        result = executor.run(Workflow(id="wf-commit", steps=[step("a")], branch="gen"))

        path = result.worktree.path
        assert result.status == WorkflowStatus.COMPLETED
        assert git(path, "status", "--porcelain") == ""
        assert git(path, "log", "-1", "--format=%s") == "treeflow: wf-commit"
        assert not (repo_with_git / "generated.txt").exists()

    def test_commit_on_complete_disabled(self, manager, test_db):
        spawner = FakeSpawner({"do a": [write_generated]})
        executor = WorkflowExecutor(spawner, manager=manager, db=test_db, commit_on_complete=False)
        result = executor.run(Workflow(id="wf-nocommit", steps=[step("a")], branch="gen"))

        assert git(result.worktree.path, "status", "--porcelain") == "?? generated.txt"

    def test_failed_workflow_not_merged(self, manager, test_db, repo_with_git):
        main_before = git(repo_with_git, "rev-parse", "main")
        spawner = FakeSpawner({"do a": [1]})
        executor = WorkflowExecutor(spawner, manager=manager, db=test_db, merge_on_success=True)
        result = executor.run(
            Workflow(id="wf-fail", steps=[step("a", max_retries=0)], branch="broken")
        )

        assert result.status == WorkflowStatus.FAILED
        assert result.merge_result is None
        assert git(repo_with_git, "rev-parse", "main") == main_before
        assert result.worktree.path.is_dir()

    def test_commit_failure_blocks_merge(self, manager, test_db, repo_with_git, mocker):
        main_before = git(repo_with_git, "rev-parse", "main")
        mocker.patch.object(
            manager.git, "commit", side_effect=GitError("commit", ["commit"], "hook rejected", 1)
        )
        spawner = FakeSpawner({"do a": [write_generated]})
        executor = WorkflowExecutor(spawner, manager=manager, db=test_db, merge_on_success=True)
        result = executor.run(Workflow(id="wf-nocommit-merge", steps=[step("a")], branch="gen"))

        assert result.status == WorkflowStatus.COMPLETED
        assert result.error.startswith("Commit failed")
        assert result.merge_result is None
        assert git(repo_with_git, "rev-parse", "main") == main_before
        assert result.worktree.path.is_dir()

    def test_worktree_busy_between_retries(self, manager, test_db):
        spawner = FakeSpawner({"do a": [1, 0]})
        executor = WorkflowExecutor(
            spawner,
            manager=manager,
            db=test_db,
            retry_policy=RetryPolicy(initial_delay=1.0, jitter=0),
        )
        workflow_id = executor.submit(
            Workflow(id="wf-backoff", steps=[step("a", max_retries=1)], branch="backoff")
        )
        path = executor.get_workflow(workflow_id).worktree.path

        # First attempt failed, the retry is scheduled but not yet running
        wait_for(lambda: executor.get_workflow(workflow_id).get_step("a").status == StepStatus.FAILED)
        assert manager.is_busy(path)
        with pytest.raises(WorktreeBusyError):
            MergeResolver(manager).merge(path)

        result = executor.wait(workflow_id, timeout=10)
        assert result.status == WorkflowStatus.COMPLETED
        assert result.get_step("a").attempts == 2
        assert not manager.is_busy(path)

    def test_worktree_held_elsewhere_rejected(self, fake_spawner, manager, test_db, repo_with_git):
        wt = manager.create(WorktreeConfig(branch="elsewhere"))
        other = WorktreeManager(repo_with_git, db=test_db)
        executor = WorkflowExecutor(fake_spawner, manager=manager, db=test_db)

        with other.busy(wt.path):
            with pytest.raises(WorktreeBusyError):
                executor.run(Workflow(id="wf-held", steps=[step("a")], worktree=wt))
        assert fake_spawner.calls == []
        assert executor.get_workflow("wf-held") is None

        result = executor.run(Workflow(id="wf-free", steps=[step("a")], worktree=wt))
        assert result.status == WorkflowStatus.COMPLETED

"""Tests for CLI commands.

Tests the treeflow CLI using Click's CliRunner:
- init: Initialize config and state database
- run: Execute a workflow file with a scripted stand-in agent
- status: Show persisted workflow state
- worktree list/create/remove/cleanup
- merge detect/resolve/abort
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from conftest import commit_file, git
from treeflow.cli import main
from treeflow.core.state import Database


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def project(repo_with_git, monkeypatch) -> Path:
    """Initialized git repository used as the current directory."""
    monkeypatch.chdir(repo_with_git)
    return repo_with_git


def use_agent(repo: Path, source: str) -> None:
    """Point the agent command at a Python script."""
    config_file = repo / ".treeflow" / "config.yaml"
    config_file.parent.mkdir(exist_ok=True)
    config_file.write_text(
        yaml.safe_dump(
            {
                "agent": {
                    "command": [sys.executable, "-c", source],
                    "model_flag": None,
                    "session_flag": None,
                    "default_timeout": 30,
                },
                "executor": {"retry_initial_delay": 0, "default_max_retries": 0},
            }
        )
    )


def write_workflow(repo: Path, steps: list[dict], workflow_id: str = "wf-cli") -> Path:
    path = repo / "workflow.yaml"
    path.write_text(yaml.safe_dump({"id": workflow_id, "name": "cli-demo", "steps": steps}))
    return path


class TestInitCommand:
    def test_init_creates_config_and_database(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Initialized treeflow" in result.output
            config = yaml.safe_load(Path(".treeflow/config.yaml").read_text())
            assert config["executor"]["max_concurrency"] == 3
            assert Path(".treeflow/state.db").exists()

    def test_init_twice(self, cli_runner):
        with cli_runner.isolated_filesystem():
            cli_runner.invoke(main, ["init"])
            result = cli_runner.invoke(main, ["init"])
            assert result.exit_code == 0
            assert "already initialized" in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestStatusCommand:
    def test_status_without_database(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["status"])
            assert result.exit_code == 0
            assert "Run 'treeflow init' first" in result.output

    def test_status_unknown_workflow(self, cli_runner):
        with cli_runner.isolated_filesystem():
            Database(Path(".treeflow/state.db"))
            result = cli_runner.invoke(main, ["status", "missing"])
            assert result.exit_code == 1
            assert "not found" in result.output


@pytest.mark.git
@pytest.mark.slow
class TestRunCommand:
    def test_run_success(self, cli_runner, project):
        use_agent(project, "import sys\nsys.stdin.read()\nprint('agent ok')\n")
        workflow = write_workflow(
            project,
            [
                {"id": "plan", "prompt": "Plan it"},
                {"id": "build", "prompt": "Build it", "depends_on": ["plan"]},
            ],
        )

        result = cli_runner.invoke(main, ["run", str(workflow)])

        assert result.exit_code == 0, result.output
        assert "agent ok" in result.output
        assert "Workflow complete!" in result.output

        status = cli_runner.invoke(main, ["status", "wf-cli"])
        assert status.exit_code == 0
        assert "completed" in status.output

        listing = cli_runner.invoke(main, ["status"])
        assert "wf-cli" in listing.output

    def test_run_failure_exits_nonzero(self, cli_runner, project):
        use_agent(project, "import sys\nsys.stdin.read()\nsys.exit(4)\n")
        workflow = write_workflow(
            project,
            [{"id": "plan", "prompt": "Plan"}, {"id": "build", "prompt": "Build", "depends_on": ["plan"]}],
        )

        result = cli_runner.invoke(main, ["run", str(workflow), "--no-stream"])

        assert result.exit_code == 1
        assert "Workflow failed" in result.output
        steps = {s.id: s.status.value for s in Database(project / ".treeflow/state.db").get_steps("wf-cli")}
        assert steps == {"plan": "failed", "build": "skipped"}

    def test_run_with_merge(self, cli_runner, project):
        use_agent(
            project,
            "import sys\nsys.stdin.read()\nopen('from_agent.txt', 'w').write('hello\\n')\n",
        )
        workflow = write_workflow(project, [{"id": "write", "prompt": "Write a file"}])

        result = cli_runner.invoke(main, ["run", str(workflow), "--merge", "--branch", "agent-work"])

        assert result.exit_code == 0, result.output
        assert "merged-clean" in result.output
        assert (project / "from_agent.txt").read_text() == "hello\n"

    def test_invalid_workflow_file(self, cli_runner, project):
        bad = project / "bad.yaml"
        bad.write_text("steps: []\n")
        result = cli_runner.invoke(main, ["run", str(bad)])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_cyclic_workflow(self, cli_runner, project):
        workflow = write_workflow(
            project,
            [
                {"id": "a", "prompt": "a", "depends_on": ["b"]},
                {"id": "b", "prompt": "b", "depends_on": ["a"]},
            ],
        )
        result = cli_runner.invoke(main, ["run", str(workflow)])
        assert result.exit_code == 1
        assert "Circular dependency" in result.output


@pytest.mark.git
class TestWorktreeCommands:
    def test_create_list_remove(self, cli_runner, project):
        result = cli_runner.invoke(main, ["worktree", "create", "feature"])
        assert result.exit_code == 0, result.output
        path = project / ".worktrees" / "task-feature"
        assert path.is_dir()
        assert git(path, "symbolic-ref", "--short", "HEAD") == "task/feature"

        listing = cli_runner.invoke(main, ["worktree", "list"])
        assert listing.exit_code == 0
        assert "active" in listing.output

        removed = cli_runner.invoke(main, ["worktree", "remove", ".worktrees/task-feature"])
        assert removed.exit_code == 0, removed.output
        assert not path.exists()

    def test_duplicate_branch(self, cli_runner, project):
        cli_runner.invoke(main, ["worktree", "create", "feature"])
        result = cli_runner.invoke(main, ["worktree", "create", "feature", "--path", "other"])
        assert result.exit_code == 1
        assert "already checked out" in result.output

    def test_remove_dirty_requires_force(self, cli_runner, project):
        cli_runner.invoke(main, ["worktree", "create", "feature"])
        (project / ".worktrees" / "task-feature" / "wip.txt").write_text("wip\n")

        result = cli_runner.invoke(main, ["worktree", "remove", ".worktrees/task-feature"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert (project / ".worktrees" / "task-feature").exists()

        forced = cli_runner.invoke(main, ["worktree", "remove", ".worktrees/task-feature", "--force"])
        assert forced.exit_code == 0

    def test_remove_unknown(self, cli_runner, project):
        result = cli_runner.invoke(main, ["worktree", "remove", ".worktrees/nope"])
        assert result.exit_code == 1
        assert "not registered" in result.output

    def test_cleanup_reports_count(self, cli_runner, project):
        result = cli_runner.invoke(main, ["worktree", "cleanup"])
        assert result.exit_code == 0
        assert "Removed 0 stale worktree(s)" in result.output


@pytest.mark.git
class TestMergeCommands:
    @pytest.fixture
    def conflicted(self, cli_runner, project) -> Path:
        cli_runner.invoke(main, ["worktree", "create", "feature"])
        path = project / ".worktrees" / "task-feature"
        commit_file(path, "README.md", "# Feature\n")
        commit_file(project, "README.md", "# Main\n")
        return path

    def test_detect_lists_conflicts(self, cli_runner, conflicted):
        result = cli_runner.invoke(main, ["merge", "detect", ".worktrees/task-feature"])
        assert result.exit_code == 0, result.output
        assert "README.md:0" in result.output

    def test_detect_clean(self, cli_runner, project):
        cli_runner.invoke(main, ["worktree", "create", "feature"])
        result = cli_runner.invoke(main, ["merge", "detect", ".worktrees/task-feature"])
        assert result.exit_code == 0
        assert "No conflicts" in result.output

    def test_resolve_from_file(self, cli_runner, project, conflicted):
        resolutions = project / "resolutions.yaml"
        resolutions.write_text(
            yaml.safe_dump({"README.md:0": {"strategy": "custom", "content": "# Both\n"}})
        )

        result = cli_runner.invoke(
            main, ["merge", "resolve", ".worktrees/task-feature", str(resolutions)]
        )

        assert result.exit_code == 0, result.output
        assert "merged-with-resolutions" in result.output
        assert (project / "README.md").read_text() == "# Both\n"

    def test_resolve_incomplete(self, cli_runner, project, conflicted):
        resolutions = project / "resolutions.yaml"
        resolutions.write_text("{}\n")
        main_before = git(project, "rev-parse", "main")

        result = cli_runner.invoke(
            main, ["merge", "resolve", ".worktrees/task-feature", str(resolutions)]
        )

        assert result.exit_code == 1
        assert "No resolution" in result.output
        assert git(project, "rev-parse", "main") == main_before

    def test_resolve_shorthand_strategy(self, cli_runner, project, conflicted):
        resolutions = project / "resolutions.yaml"
        resolutions.write_text("README.md:0: take-target\n")
        result = cli_runner.invoke(
            main, ["merge", "resolve", ".worktrees/task-feature", str(resolutions)]
        )
        assert result.exit_code == 0, result.output
        assert (project / "README.md").read_text() == "# Main\n"

    def test_abort(self, cli_runner, conflicted):
        result = cli_runner.invoke(main, ["merge", "abort", ".worktrees/task-feature"])
        assert result.exit_code == 0
        assert "aborted" in result.output

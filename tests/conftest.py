# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the treeflow test suite.

This module provides foundational fixtures used across all test modules:
- Temporary git repositories (real git, on a `main` branch)
- Test databases with event sourcing
- Worktree managers bound to the temporary repository
- A deterministic Spawner double for executor tests

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from treeflow.agent.spawner import AgentConfig, AgentResult, OutputChunk
from treeflow.core.state import Database
from treeflow.core.workspace import WorktreeManager


def git(cwd: Path, *args: str) -> str:
    """Run a git command for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(cwd: Path, rel: str, content: str, message: str | None = None) -> str:
    """Write a file, commit it, and return the new HEAD sha."""
    path = cwd / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, "add", rel)
    git(cwd, "commit", "-m", message or f"Update {rel}")
    return git(cwd, "rev-parse", "HEAD")


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary directory with a small project layout (no git yet).

    Creates:
        - src/app.py
        - README.md
        - .gitignore ignoring treeflow's own state and worktrees
    """
    repo = tmp_path / "repo"
    repo.mkdir()
    src_dir = repo / "src"
    src_dir.mkdir()
    (src_dir / "app.py").write_text(
        'def greet(name):\n    return "hello " + name\n\n\ndef main():\n    print(greet("world"))\n'
    )
    (repo / "README.md").write_text("# Test Project\n")
    (repo / ".gitignore").write_text(".treeflow/\n.worktrees/\n")
    return repo


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Initialize temp_repo as a git repository with one commit on `main`.

    WARNING: Runs actual git commands. Skips the test when git is unavailable.
    """
    try:
        git(temp_repo, "init")
        git(temp_repo, "symbolic-ref", "HEAD", "refs/heads/main")
        git(temp_repo, "config", "user.email", "test@example.com")
        git(temp_repo, "config", "user.name", "Test User")
        git(temp_repo, "config", "commit.gpgsign", "false")
        git(temp_repo, "add", ".")
        git(temp_repo, "commit", "-m", "Initial commit")
    except (subprocess.CalledProcessError, FileNotFoundError):
        pytest.skip("Git not available")
    return temp_repo


# =============================================================================
# Database and Manager Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite event store in a temporary directory."""
    return Database(tmp_path / "state" / "test.db")


@pytest.fixture
def manager(repo_with_git: Path, test_db: Database) -> WorktreeManager:
    """WorktreeManager over the temporary repository, persisting to test_db."""
    return WorktreeManager(repo_with_git, db=test_db)


# =============================================================================
# Spawner Double
# =============================================================================


Action = int | Callable[[AgentConfig, Callable | None, threading.Event | None], AgentResult]


class FakeSpawner:
    """Deterministic Spawner keyed by prompt.

    ``script[prompt]`` is a list of actions consumed one per attempt; the
    last action repeats. An action is an exit code or a callable taking
    (config, on_output, cancel_event) and returning an AgentResult.
    Prompts without a script exit 0.
    """

    def __init__(self, script: dict[str, list[Action]] | None = None, delay: float = 0.0):
        self.script: dict[str, list[Action]] = dict(script or {})
        self.delay = delay
        self.calls: list[AgentConfig] = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def _next_action(self, prompt: str) -> Action:
        actions = self.script.get(prompt)
        if not actions:
            return 0
        return actions.pop(0) if len(actions) > 1 else actions[0]

    def spawn(
        self,
        config: AgentConfig,
        on_output: Callable[[OutputChunk], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentResult:
        with self._lock:
            self.calls.append(config)
            action = self._next_action(config.prompt)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if callable(action):
                return action(config, on_output, cancel_event)
            if self.delay:
                time.sleep(self.delay)
            text = f"ran {config.prompt}\n"
            if on_output is not None:
                on_output(OutputChunk(stream="stdout", text=text, sequence=0))
            return AgentResult(
                exit_code=action,
                stdout=text,
                stderr="" if action == 0 else "agent failed",
            )
        finally:
            with self._lock:
                self.running -= 1

    def prompts(self) -> list[str]:
        with self._lock:
            return [c.prompt for c in self.calls]


def block_until_cancelled(
    config: AgentConfig, on_output: Callable | None, cancel_event: threading.Event | None
) -> AgentResult:
    """Agent action that runs until its cancel event fires."""
    assert cancel_event is not None
    cancel_event.wait(10)
    return AgentResult(exit_code=-15, cancelled=True)


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()



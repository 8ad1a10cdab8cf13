"""Thin wrapper around the git command line.

Every git subprocess the engine runs goes through GitGateway so failures
surface as GitError tagged with the operation that issued them.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Local git operations should complete quickly, but can hang on
# corrupted repos or busy filesystems
GIT_TIMEOUT = 30

# Unmerged status codes in git porcelain v1
UNMERGED_STATUSES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


class GitError(Exception):
    """A git command failed.

    Carries the logical operation (e.g. "worktree-add"), the git arguments,
    stderr and the exit code so callers can report or branch on them.
    """

    def __init__(
        self,
        operation: str,
        command: list[str],
        stderr: str,
        returncode: int | None = None,
    ):
        self.operation = operation
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        code = f"exit {returncode}" if returncode is not None else "no exit code"
        super().__init__(f"{operation} failed ({code}): {stderr}")


@dataclass
class WorktreeEntry:
    """One block of `git worktree list --porcelain` output."""

    path: Path
    head: str | None = None
    branch: str | None = None  # Short name, None when detached or bare
    detached: bool = False
    bare: bool = False
    locked: bool = False
    prunable: bool = False


@dataclass
class FileChange:
    """Represents a file change from git status."""

    path: str
    status: str  # 'A', 'M', 'D', 'R', 'C', or 'U' (unmerged)
    old_path: str | None = None  # For renames/copies


@dataclass
class UnmergedEntry:
    """Index stages present for one unmerged path (from `git ls-files -u`)."""

    path: str
    stages: set[int]

    @property
    def has_source(self) -> bool:
        return 2 in self.stages

    @property
    def has_target(self) -> bool:
        return 3 in self.stages


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse `git worktree list --porcelain` into entries.

    Blocks are separated by blank lines; each starts with a `worktree` line.
    """
    entries: list[WorktreeEntry] = []
    current: WorktreeEntry | None = None
    for line in output.splitlines():
        if not line.strip():
            current = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = WorktreeEntry(path=Path(value))
            entries.append(current)
            continue
        if current is None:
            continue
        if key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "detached":
            current.detached = True
        elif key == "bare":
            current.bare = True
        elif key == "locked":
            current.locked = True
        elif key == "prunable":
            current.prunable = True
    return entries


def parse_status(output: str) -> list[FileChange]:
    """Parse NUL-terminated `git status --porcelain=v1 -z` output.

    Porcelain v1 format:
    - Standard: "XY path" where XY is 2 chars (e.g., " M", "A ", "??")
    - Renames/copies: "R  new_path\\0old_path\\0"
    """
    changes: list[FileChange] = []
    entries = [e for e in output.split("\x00") if e]

    i = 0
    while i < len(entries):
        entry = entries[i]
        if len(entry) < 4:  # Minimum: "XY " + at least 1 char path
            i += 1
            continue

        status_xy = entry[:2]
        path = entry[3:]

        if status_xy in UNMERGED_STATUSES:
            changes.append(FileChange(path=path, status="U"))
        elif "R" in status_xy or "C" in status_xy:
            old_path = entries[i + 1] if i + 1 < len(entries) else None
            s_type = "R" if "R" in status_xy else "C"
            changes.append(FileChange(path=path, status=s_type, old_path=old_path))
            i += 2
            continue
        elif "?" in status_xy or "A" in status_xy:
            changes.append(FileChange(path=path, status="A"))
        elif "D" in status_xy:
            changes.append(FileChange(path=path, status="D"))
        else:
            changes.append(FileChange(path=path, status="M"))
        i += 1

    return changes


def parse_unmerged(output: str) -> list[UnmergedEntry]:
    """Parse NUL-terminated `git ls-files -u -z` output, ordered by path."""
    by_path: dict[str, UnmergedEntry] = {}
    for record in output.split("\x00"):
        if not record:
            continue
        meta, _, path = record.partition("\t")
        parts = meta.split()
        if len(parts) != 3:
            continue
        entry = by_path.setdefault(path, UnmergedEntry(path=path, stages=set()))
        entry.stages.add(int(parts[2]))
    return [by_path[p] for p in sorted(by_path)]


class GitGateway:
    """Issues git commands against one repository.

    All methods accept an optional ``cwd`` so the same gateway can operate
    inside any worktree of the repository.
    """

    def __init__(self, repo_path: Path, timeout: int = GIT_TIMEOUT):
        self.repo_path = Path(repo_path).absolute()
        self.timeout = timeout

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        operation: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run `git <args>` and return the completed process.

        Raises:
            GitError: On timeout, missing git binary, or (when check is set)
                a non-zero exit.
        """
        operation = operation or args[0]
        workdir = Path(cwd) if cwd is not None else self.repo_path
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=workdir,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitError(operation, args, f"timed out after {self.timeout}s")
        except (FileNotFoundError, NotADirectoryError) as e:
            raise GitError(operation, args, str(e))

        logger.debug(f"git {' '.join(args)} in {workdir} -> {result.returncode}")
        if check and result.returncode != 0:
            raise GitError(operation, args, result.stderr.strip(), result.returncode)
        return result

    # --- Refs ---

    def resolve_commit(self, ref: str, cwd: Path | None = None) -> str | None:
        """Resolve ref to a commit sha, or None if it does not resolve."""
        result = self.run(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
            cwd=cwd,
            operation="rev-parse",
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def head(self, cwd: Path | None = None) -> str:
        return self.run(["rev-parse", "HEAD"], cwd=cwd, operation="rev-parse").stdout.strip()

    def current_branch(self, cwd: Path | None = None) -> str | None:
        """Branch checked out in cwd, or None when HEAD is detached."""
        result = self.run(
            ["symbolic-ref", "--quiet", "--short", "HEAD"],
            cwd=cwd,
            operation="symbolic-ref",
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        result = self.run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            operation="show-ref",
            check=False,
        )
        return result.returncode == 0

    def is_valid_branch_name(self, branch: str) -> bool:
        result = self.run(
            ["check-ref-format", "--branch", branch],
            operation="check-ref-format",
            check=False,
        )
        return result.returncode == 0

    def delete_branch(self, branch: str, force: bool = False) -> None:
        self.run(["branch", "-D" if force else "-d", branch], operation="branch-delete")

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self.run(
            ["merge-base", "--is-ancestor", ancestor, descendant],
            operation="merge-base",
            check=False,
        )
        if result.returncode not in (0, 1):
            raise GitError("merge-base", [ancestor, descendant], result.stderr.strip(), result.returncode)
        return result.returncode == 0

    def update_branch(self, branch: str, new_commit: str, old_commit: str) -> None:
        """Move refs/heads/<branch> to new_commit only if it still points at old_commit."""
        self.run(
            ["update-ref", f"refs/heads/{branch}", new_commit, old_commit],
            operation="update-ref",
        )

    # --- Worktrees ---

    def worktree_add(
        self, path: Path, branch: str, base_commit: str, create_branch: bool
    ) -> None:
        if create_branch:
            args = ["worktree", "add", "-b", branch, str(path), base_commit]
        else:
            args = ["worktree", "add", str(path), branch]
        self.run(args, operation="worktree-add")

    def worktree_add_detached(self, path: Path, commit: str) -> None:
        self.run(
            ["worktree", "add", "--detach", str(path), commit],
            operation="worktree-add",
        )

    def worktree_list(self) -> list[WorktreeEntry]:
        result = self.run(["worktree", "list", "--porcelain"], operation="worktree-list")
        return parse_worktree_list(result.stdout)

    def worktree_remove(self, path: Path, force: bool = False) -> None:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        self.run(args, operation="worktree-remove")

    def worktree_prune(self) -> None:
        self.run(["worktree", "prune"], operation="worktree-prune")

    # --- Working tree state ---

    def status(self, cwd: Path) -> list[FileChange]:
        result = self.run(["status", "--porcelain=v1", "-z"], cwd=cwd, operation="status")
        return parse_status(result.stdout)

    def is_dirty(self, cwd: Path) -> bool:
        return bool(self.status(cwd))

    def add(self, cwd: Path, paths: list[str]) -> None:
        if paths:
            self.run(["add", "--", *paths], cwd=cwd, operation="add")

    def add_all(self, cwd: Path) -> None:
        self.run(["add", "--all"], cwd=cwd, operation="add")

    def remove_paths(self, cwd: Path, paths: list[str]) -> None:
        if paths:
            self.run(["rm", "--quiet", "--", *paths], cwd=cwd, operation="rm")

    def commit(self, cwd: Path, message: str) -> str:
        """Commit the index in cwd and return the new HEAD sha."""
        self.run(["commit", "--no-verify", "-m", message], cwd=cwd, operation="commit")
        return self.head(cwd)

    def checkout_stage(self, cwd: Path, side: str, path: str) -> None:
        """Check out one side ("ours" or "theirs") of an unmerged path."""
        self.run(["checkout", f"--{side}", "--", path], cwd=cwd, operation="checkout")

    def show_stage(self, cwd: Path, stage: int, path: str) -> str:
        """Content of path at an index stage (1=base, 2=ours, 3=theirs)."""
        return self.run(["show", f":{stage}:{path}"], cwd=cwd, operation="show").stdout

    # --- Merging ---

    def merge_no_commit(self, cwd: Path, ref: str) -> bool:
        """Merge ref into the branch checked out in cwd without committing.

        diff3 conflict style is forced so conflict regions carry the base
        section. Returns True when the merge applied cleanly and False when
        it stopped on conflicts.

        Raises:
            GitError: For any failure other than content conflicts.
        """
        args = [
            "-c",
            "merge.conflictStyle=diff3",
            "merge",
            "--no-commit",
            "--no-ff",
            ref,
        ]
        result = self.run(args, cwd=cwd, operation="merge", check=False)
        if result.returncode == 0:
            return True
        if self.unmerged(cwd):
            return False
        raise GitError("merge", args, (result.stderr or result.stdout).strip(), result.returncode)

    def merge_in_progress(self, cwd: Path) -> bool:
        result = self.run(
            ["rev-parse", "--quiet", "--verify", "MERGE_HEAD"],
            cwd=cwd,
            operation="rev-parse",
            check=False,
        )
        return result.returncode == 0

    def merge_abort(self, cwd: Path) -> None:
        self.run(["merge", "--abort"], cwd=cwd, operation="merge-abort")

    def reset_hard(self, cwd: Path, commit: str) -> None:
        self.run(["reset", "--hard", commit], cwd=cwd, operation="reset")

    def merge_fast_forward(self, cwd: Path, commit: str) -> None:
        self.run(["merge", "--ff-only", commit], cwd=cwd, operation="merge-ff")

    def unmerged(self, cwd: Path) -> list[UnmergedEntry]:
        result = self.run(["ls-files", "-u", "-z"], cwd=cwd, operation="ls-files")
        return parse_unmerged(result.stdout)

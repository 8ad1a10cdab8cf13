"""Git worktree isolation for concurrent workflows.

Each workflow runs in its own git worktree bound to one branch, so agents
working on different branches never touch each other's files. The
WorktreeRegistry is the only mutable state shared between workflows; it is
owned explicitly and passed to every component that needs it.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path

from filelock import FileLock, Timeout

from treeflow.core.git import GitError, GitGateway
from treeflow.core.models import Worktree, WorktreeConfig, WorktreeStatus
from treeflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)

# Prefix of the throwaway checkouts used for dry-run merges
SCRATCH_PREFIX = ".merge-"


class WorktreeError(Exception):
    """Error during worktree operations."""

    pass


class BranchAlreadyCheckedOutError(WorktreeError):
    """The branch already backs an active worktree (or the main checkout)."""

    def __init__(self, branch: str, path: Path | None = None):
        self.branch = branch
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"Branch '{branch}' is already checked out{where}")


class RefNotFoundError(WorktreeError):
    """The base ref does not resolve to a commit."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Ref not found: {ref}")


class WorktreeNotFoundError(WorktreeError):
    """No worktree is registered at the given path."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Worktree not registered: {path}")


class WorktreeExistsError(WorktreeError):
    """Another worktree already occupies the requested path."""

    pass


class WorktreeDirtyError(WorktreeError):
    """The worktree has uncommitted changes."""

    def __init__(self, path: Path, files: list[str] | None = None):
        self.path = path
        self.files = files or []
        super().__init__(
            f"Worktree {path} has uncommitted changes ({len(self.files)} files)"
        )


class WorktreeBusyError(WorktreeError):
    """The worktree is in use by a running workflow or a merge."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Worktree {path} is busy: a workflow or merge is using it")


def _sanitize_name(name: str) -> str:
    """Sanitize a branch name or path hint for use as a directory name.

    Prevents path traversal attacks.
    """
    # Branch separators become dashes so task/foo -> task-foo
    sanitized = re.sub(r"[/\\\x00]", "-", name)
    # Remove leading dots (hidden files / parent traversal)
    sanitized = sanitized.lstrip(".")
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "-", sanitized)
    sanitized = sanitized[:64]
    if not sanitized:
        sanitized = uuid.uuid4().hex[:16]
    return sanitized


class WorktreeRegistry:
    """Lock-guarded table of worktrees known to this process.

    Keys are resolved absolute paths. Removed worktrees stay as tombstones so
    a second remove() is a no-op. A branch maps to at most one live path.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[Path, Worktree] = {}
        self._branches: dict[str, Path] = {}
        self._reserved: set[Path] = set()
        self._path_locks: dict[Path, threading.RLock] = {}
        self._busy: dict[Path, int] = {}
        self._held: dict[Path, FileLock] = {}

    @classmethod
    def load(cls, db: Database) -> "WorktreeRegistry":
        """Rebuild a registry from the persisted worktree projection.

        Removed worktrees come back as tombstones so removing them again
        stays a no-op after a restart.
        """
        registry = cls()
        for worktree in db.load_worktrees(include_removed=True):
            registry.register(worktree)
        return registry

    def path_lock(self, path: Path) -> threading.RLock:
        """Lock serializing mutations of one path (single writer per path)."""
        with self._lock:
            return self._path_locks.setdefault(path, threading.RLock())

    def reserve(self, branch: str, path: Path) -> None:
        """Claim branch and path for a worktree about to be created.

        Raises:
            BranchAlreadyCheckedOutError: The branch backs a live worktree or
                another create is in flight for it.
            WorktreeExistsError: The path is taken.
        """
        with self._lock:
            holder = self._branches.get(branch)
            if holder is not None:
                raise BranchAlreadyCheckedOutError(branch, holder)
            existing = self._entries.get(path)
            if path in self._reserved or (
                existing is not None and existing.status != WorktreeStatus.REMOVED
            ):
                raise WorktreeExistsError(f"Worktree path already in use: {path}")
            self._branches[branch] = path
            self._reserved.add(path)

    def release(self, branch: str, path: Path) -> None:
        """Drop a reservation whose create failed."""
        with self._lock:
            if self._branches.get(branch) == path:
                del self._branches[branch]
            self._reserved.discard(path)

    def register(self, worktree: Worktree) -> None:
        with self._lock:
            path = Path(worktree.path)
            self._entries[path] = worktree
            self._reserved.discard(path)
            if worktree.status != WorktreeStatus.REMOVED:
                self._branches[worktree.branch] = path

    def get(self, path: Path) -> Worktree | None:
        """Registered entry for path, including tombstones."""
        with self._lock:
            entry = self._entries.get(path)
            return entry.model_copy() if entry else None

    def entries(self) -> list[Worktree]:
        with self._lock:
            return [e.model_copy() for e in self._entries.values()]

    def set_status(self, path: Path, status: WorktreeStatus) -> bool:
        """Update an entry's status. Returns True if it changed."""
        with self._lock:
            entry = self._entries.get(path)
            if entry is None or entry.status == status:
                return False
            entry.status = status
            if status == WorktreeStatus.REMOVED:
                if self._branches.get(entry.branch) == path:
                    del self._branches[entry.branch]
            else:
                self._branches[entry.branch] = path
            return True

    def acquire_busy(self, path: Path, lock: FileLock | None = None) -> None:
        """Count one more holder of path. The first holder also takes lock.

        Raises:
            WorktreeNotFoundError: Path is not a live registered worktree.
            WorktreeBusyError: Another process holds lock.
        """
        with self.path_lock(path), self._lock:
            entry = self._entries.get(path)
            if entry is None or entry.status == WorktreeStatus.REMOVED:
                raise WorktreeNotFoundError(path)
            count = self._busy.get(path, 0)
            if count == 0 and lock is not None:
                try:
                    lock.acquire(timeout=0)
                except Timeout:
                    raise WorktreeBusyError(path)
                self._held[path] = lock
            self._busy[path] = count + 1

    def release_busy(self, path: Path) -> None:
        with self._lock:
            count = self._busy.get(path, 0) - 1
            if count > 0:
                self._busy[path] = count
                return
            self._busy.pop(path, None)
            lock = self._held.pop(path, None)
        if lock is not None:
            lock.release()

    def is_busy(self, path: Path) -> bool:
        with self._lock:
            return self._busy.get(path, 0) > 0


class WorktreeManager:
    """Create, enumerate, inspect and remove isolated worktrees.

    Worktrees live under ``<repo>/<base_dir>/<sanitized name>``. Git
    operations that change the worktree set are serialized across processes
    with a file lock in ``<repo>/.treeflow``.
    """

    WORKTREES_DIR = ".worktrees"

    def __init__(
        self,
        repo_path: Path,
        registry: WorktreeRegistry | None = None,
        db: Database | None = None,
        base_dir: str = WORKTREES_DIR,
        branch_prefix: str = "",
        git: GitGateway | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.git = git or GitGateway(self.repo_path)
        self.db = db
        if registry is None:
            registry = WorktreeRegistry.load(db) if db is not None else WorktreeRegistry()
        self.registry = registry
        self.branch_prefix = branch_prefix
        self.worktrees_dir = self.repo_path / base_dir

        state_dir = self.repo_path / ".treeflow"
        state_dir.mkdir(parents=True, exist_ok=True)
        self._git_lock = FileLock(str(state_dir / "worktrees.lock"))
        self._busy_dir = state_dir / "busy"
        self._busy_dir.mkdir(exist_ok=True)
        self._validate_git_repo()

    def _validate_git_repo(self) -> None:
        try:
            self.git.run(["rev-parse", "--git-dir"], operation="rev-parse")
        except GitError as e:
            raise WorktreeError(f"Not a git repository: {self.repo_path}") from e

    def resolve_path(self, path: Path | str) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.repo_path / path
        return path.resolve()

    def _validate_worktrees_dir(self) -> None:
        """Refuse a worktrees directory that is a symlink or escapes the repo."""
        if self.worktrees_dir.is_symlink():
            raise WorktreeError(
                f"SECURITY: {self.worktrees_dir} is a symlink. Remove it manually."
            )
        if self.worktrees_dir.exists():
            try:
                self.worktrees_dir.resolve().relative_to(self.repo_path)
            except ValueError:
                raise WorktreeError(f"SECURITY: {self.worktrees_dir} resolves outside repo.")

    def _is_managed_path(self, path: Path) -> bool:
        try:
            rel = path.relative_to(self.worktrees_dir.resolve())
        except ValueError:
            return False
        return len(rel.parts) == 1 and not rel.name.startswith(SCRATCH_PREFIX)

    def _record(self, event_type: EventType, path: Path, **payload) -> None:
        if self.db is None:
            return
        self.db.append_event(
            Event(event_type=event_type, worktree_path=str(path), payload=payload)
        )

    def branch_name(self, branch: str) -> str:
        if self.branch_prefix and not branch.startswith(self.branch_prefix):
            return f"{self.branch_prefix}{branch}"
        return branch

    def new_path(self, hint: str) -> Path:
        """Path a worktree created with this hint would occupy."""
        return self.worktrees_dir.resolve() / _sanitize_name(hint)

    # --- Operations ---

    def create(self, config: WorktreeConfig) -> Worktree:
        """Create an isolated checkout of config.branch.

        The branch is created from config.base_ref if it does not exist yet,
        otherwise the existing branch is checked out.

        Raises:
            RefNotFoundError: base_ref does not resolve.
            BranchAlreadyCheckedOutError: The branch already backs a worktree.
            WorktreeExistsError: The target path is already occupied.
            GitError: git failed for another reason.
        """
        branch = self.branch_name(config.branch)
        if not self.git.is_valid_branch_name(branch):
            raise WorktreeError(f"Invalid branch name: {branch}")

        base_commit = self.git.resolve_commit(config.base_ref)
        if base_commit is None:
            raise RefNotFoundError(config.base_ref)

        self._validate_worktrees_dir()
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        # Re-validate after mkdir (TOCTOU)
        self._validate_worktrees_dir()

        path = self.new_path(config.path_hint or branch)
        self.registry.reserve(branch, path)
        try:
            with self.registry.path_lock(path), self._git_lock:
                for entry in self.git.worktree_list():
                    if entry.branch == branch:
                        raise BranchAlreadyCheckedOutError(branch, entry.path)
                    if entry.path.resolve() == path:
                        raise WorktreeExistsError(f"Path is already a git worktree: {path}")
                if path.exists() or path.is_symlink():
                    raise WorktreeExistsError(f"Path already exists on disk: {path}")

                target = config.target_branch or self.git.current_branch()
                if self.git.branch_exists(branch):
                    self.git.worktree_add(path, branch, base_commit, create_branch=False)
                    base_commit = self.git.head(path)
                else:
                    self.git.worktree_add(path, branch, base_commit, create_branch=True)
        except BaseException:
            self.registry.release(branch, path)
            raise

        worktree = Worktree(
            path=path,
            branch=branch,
            base_ref=config.base_ref,
            base_commit=base_commit,
            target_branch=target,
        )
        self.registry.register(worktree)
        self._record(EventType.WORKTREE_CREATED, path, worktree=worktree)
        logger.info(f"Created worktree {path} on branch {branch} from {config.base_ref}")
        return worktree.model_copy()

    def list(self) -> list[Worktree]:
        """Reconcile the registry with git's own worktree list.

        Registered worktrees that git no longer knows (or reports prunable)
        become ``stale``. Checkouts under the worktrees directory that the
        registry does not know are returned as ``stale`` but not adopted.
        """
        live = {
            entry.path.resolve(): entry
            for entry in self.git.worktree_list()
            if not entry.prunable
        }
        results: list[Worktree] = []
        known: set[Path] = set()

        for worktree in self.registry.entries():
            path = Path(worktree.path)
            known.add(path)
            if worktree.status == WorktreeStatus.REMOVED:
                continue
            with self.registry.path_lock(path):
                status = WorktreeStatus.ACTIVE if path in live else WorktreeStatus.STALE
                if self.registry.set_status(path, status):
                    if status == WorktreeStatus.STALE:
                        logger.warning(f"Worktree {path} is registered but missing from git")
                        self._record(EventType.WORKTREE_STALE, path)
                    else:
                        self._record(EventType.WORKTREE_CREATED, path, worktree=worktree)
            worktree.status = status
            results.append(worktree)

        for path, entry in live.items():
            if path in known and self.registry.get(path).status != WorktreeStatus.REMOVED:
                continue
            if not self._is_managed_path(path):
                continue
            results.append(self._unregistered(path, entry.branch or "", entry.head or ""))
            known.add(path)

        if self.worktrees_dir.is_dir() and not self.worktrees_dir.is_symlink():
            for child in sorted(self.worktrees_dir.iterdir()):
                path = child.resolve()
                if path in known or path in live or not child.is_dir():
                    continue
                if not self._is_managed_path(path):
                    continue
                results.append(self._unregistered(path, "", ""))

        return results

    def _unregistered(self, path: Path, branch: str, head: str) -> Worktree:
        try:
            created = datetime.fromtimestamp(path.stat().st_mtime, UTC)
        except OSError:
            created = datetime.now(UTC)
        return Worktree(
            path=path,
            branch=branch,
            base_ref=head,
            base_commit=head,
            created_at=created,
            status=WorktreeStatus.STALE,
        )

    def get_info(self, path: Path | str) -> Worktree | None:
        """Registered worktree at path, or None. Never raises for unknown paths."""
        worktree = self.registry.get(self.resolve_path(path))
        if worktree is None or worktree.status == WorktreeStatus.REMOVED:
            return None
        return worktree

    def adopt(self, path: Path | str, target_branch: str | None = None) -> Worktree:
        """Register a stale checkout that git still knows about."""
        key = self.resolve_path(path)
        with self.registry.path_lock(key):
            existing = self.registry.get(key)
            if existing is not None and existing.status != WorktreeStatus.REMOVED:
                return existing
            entry = next(
                (e for e in self.git.worktree_list() if e.path.resolve() == key), None
            )
            if entry is None or entry.branch is None:
                raise WorktreeNotFoundError(key)
            self.registry.reserve(entry.branch, key)
            worktree = Worktree(
                path=key,
                branch=entry.branch,
                base_ref=entry.head or entry.branch,
                base_commit=entry.head or "",
                target_branch=target_branch or self.git.current_branch(),
            )
            self.registry.register(worktree)
        self._record(EventType.WORKTREE_CREATED, key, worktree=worktree)
        logger.info(f"Adopted worktree {key} on branch {entry.branch}")
        return worktree.model_copy()

    def remove(
        self, path: Path | str, force: bool = False, delete_branch: bool = False
    ) -> None:
        """Delete a registered worktree's checkout and unregister it.

        Removing an already removed worktree is a no-op.

        Raises:
            WorktreeNotFoundError: Path was never registered.
            WorktreeBusyError: A step is running in the worktree.
            WorktreeDirtyError: Uncommitted changes exist and force is False.
        """
        key = self.resolve_path(path)
        with self.registry.path_lock(key):
            worktree = self.registry.get(key)
            if worktree is None:
                raise WorktreeNotFoundError(key)
            if worktree.status == WorktreeStatus.REMOVED:
                logger.debug(f"Worktree {key} already removed")
                return
            if self.is_busy(key):
                raise WorktreeBusyError(key)
            if key.is_dir() and not force:
                changes = self.git.status(key)
                if changes:
                    raise WorktreeDirtyError(key, [c.path for c in changes])

            with self._git_lock:
                self._delete_checkout(key)
                if delete_branch and self.git.branch_exists(worktree.branch):
                    self.git.delete_branch(worktree.branch, force=True)

            self.registry.set_status(key, WorktreeStatus.REMOVED)
        self._record(EventType.WORKTREE_REMOVED, key, branch=worktree.branch)
        logger.info(f"Removed worktree {key}")

    def _delete_checkout(self, path: Path) -> None:
        """Remove a checkout through git, falling back to deleting the directory."""
        live = {e.path.resolve() for e in self.git.worktree_list()}
        if path in live:
            try:
                self.git.worktree_remove(path, force=True)
            except GitError as e:
                logger.warning(f"git worktree remove failed for {path}: {e}")
        if path.exists() or path.is_symlink():
            self._remove_safe(path)
        self.git.worktree_prune()

    def _remove_safe(self, path: Path) -> None:
        """Remove a file or directory without following symlinks out of the worktrees dir.

        Must check is_symlink() BEFORE is_dir() because is_dir() returns True
        for symlinks pointing to directories.
        """
        if path.is_symlink():
            path.unlink()
            return
        try:
            path.resolve().relative_to(self.worktrees_dir.resolve())
        except ValueError:
            raise WorktreeError(f"SECURITY: Refusing to delete path outside worktrees dir: {path}")
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    def add_scratch(self, commit: str) -> Path:
        """Create an unregistered, detached checkout of commit for dry runs."""
        self._validate_worktrees_dir()
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        path = self.worktrees_dir.resolve() / f"{SCRATCH_PREFIX}{uuid.uuid4().hex[:8]}"
        with self._git_lock:
            self.git.worktree_add_detached(path, commit)
        return path

    def remove_scratch(self, path: Path) -> None:
        with self._git_lock:
            self._delete_checkout(path)

    def cleanup_stale(self, max_age_hours: float = 24) -> list[Path]:
        """Remove stale worktrees older than max_age_hours. Returns removed paths."""
        cutoff = datetime.now(UTC) - timedelta(hours=max_age_hours)
        removed: list[Path] = []
        for worktree in self.list():
            if worktree.status != WorktreeStatus.STALE or worktree.created_at > cutoff:
                continue
            path = Path(worktree.path)
            registered = self.registry.get(path)
            if registered is not None and registered.status != WorktreeStatus.REMOVED:
                self.remove(path, force=True)
            else:
                with self.registry.path_lock(path), self._git_lock:
                    self._delete_checkout(path)
                logger.info(f"Removed unregistered stale worktree {path}")
            removed.append(path)
        return removed

    def _busy_lock(self, key: Path) -> FileLock:
        """Per-worktree lock file held while the worktree is in use.

        Not thread-local: a workflow takes it on the submitting thread and
        releases it on its own thread.
        """
        digest = hashlib.sha1(str(key).encode()).hexdigest()[:12]
        name = f"{re.sub(r'[^A-Za-z0-9_-]', '-', key.name)[:40]}-{digest}.lock"
        return FileLock(str(self._busy_dir / name), thread_local=False)

    def hold(self, path: Path | str) -> None:
        """Mark the worktree busy until release() is called.

        Visible to every process sharing the repository.

        Raises:
            WorktreeNotFoundError: Path is not a registered worktree.
            WorktreeBusyError: Another process is using the worktree.
        """
        key = self.resolve_path(path)
        self.registry.acquire_busy(key, self._busy_lock(key))

    def release(self, path: Path | str) -> None:
        self.registry.release_busy(self.resolve_path(path))

    @contextmanager
    def busy(self, path: Path | str) -> Generator[None, None, None]:
        """Mark the worktree busy for the duration of the block."""
        self.hold(path)
        try:
            yield
        finally:
            self.release(path)

    def is_busy(self, path: Path | str) -> bool:
        """True while this or any other process holds the worktree."""
        key = self.resolve_path(path)
        if self.registry.is_busy(key):
            return True
        lock = self._busy_lock(key)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            return True
        lock.release()
        return False

"""Conflict detection and resolution for integrating worktree branches.

Integration merges the target branch INTO the worktree's branch, inside the
worktree, and then fast-forwards the target to the resulting commit. This
keeps conflict resolution where the agents worked and never leaves the
target branch half-merged.

Detection is a dry run in a throwaway detached checkout, so it never
touches the worktree or the target branch.
"""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock

from treeflow.core.git import GitGateway
from treeflow.core.models import (
    ConflictMarkers,
    ConflictResolution,
    MergeConflict,
    MergeResolution,
    MergeResult,
    MergeStatus,
    ResolutionStrategy,
    Worktree,
)
from treeflow.core.state import Event, EventType
from treeflow.core.workspace import (
    WorktreeBusyError,
    WorktreeDirtyError,
    WorktreeManager,
    WorktreeNotFoundError,
)

logger = logging.getLogger(__name__)

_START = re.compile(r"^<{7}(?: |$)")
_BASE = re.compile(r"^\|{7}(?: |$)")
_MIDDLE = re.compile(r"^={7}$")
_END = re.compile(r"^>{7}(?: |$)")


class MergeError(Exception):
    """Error during merge operations."""

    pass


class ResolutionIncompleteError(MergeError):
    """Some detected conflicts have no resolution."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"No resolution for {len(missing)} conflict(s): {', '.join(missing)}")


class UnknownConflictError(MergeError):
    """A resolution names a conflict that detection did not report."""

    def __init__(self, unknown: list[str]):
        self.unknown = unknown
        super().__init__(f"Unknown conflict id(s): {', '.join(unknown)}")


class StaleConflictsError(MergeError):
    """The worktree or target moved since conflicts were detected."""

    pass


class NoMergeInProgressError(MergeError):
    """resolve_conflict was called without a preceding detect_conflicts."""

    pass


@dataclass
class _Region:
    """Conflict region located in a list of lines (0-based line indexes)."""

    start: int
    middle: int
    end: int
    source: str
    target: str
    base: str | None


@dataclass
class _Attempt:
    """State recorded by detect_conflicts for one worktree."""

    worktree: Worktree
    target_branch: str
    source_head: str
    target_head: str
    conflicts: list[MergeConflict]


def _find_regions(lines: list[str]) -> list[_Region]:
    """Locate diff3-style conflict regions. Lines keep their line endings."""
    regions: list[_Region] = []
    i = 0
    while i < len(lines):
        if not _START.match(lines[i].rstrip("\r\n")):
            i += 1
            continue
        start, base_at, middle, end = i, None, None, None
        j = i + 1
        while j < len(lines):
            text = lines[j].rstrip("\r\n")
            if middle is None and base_at is None and _BASE.match(text):
                base_at = j
            elif middle is None and _MIDDLE.match(text):
                middle = j
            elif middle is not None and _END.match(text):
                end = j
                break
            j += 1
        if middle is None or end is None:
            break  # Unterminated region; nothing after it is a conflict
        source_end = base_at if base_at is not None else middle
        regions.append(
            _Region(
                start=start,
                middle=middle,
                end=end,
                source="".join(lines[start + 1 : source_end]),
                target="".join(lines[middle + 1 : end]),
                base="".join(lines[base_at + 1 : middle]) if base_at is not None else None,
            )
        )
        i = end + 1
    return regions


def parse_conflicts(path: str, text: str) -> list[MergeConflict]:
    """Parse the conflict regions of one merged file, in file order."""
    lines = text.splitlines(keepends=True)
    return [
        MergeConflict(
            path=path,
            index=index,
            source=region.source,
            target=region.target,
            base=region.base,
            markers=ConflictMarkers(
                start=region.start + 1, middle=region.middle + 1, end=region.end + 1
            ),
        )
        for index, region in enumerate(_find_regions(lines))
    ]


def splice_resolutions(lines: list[str], regions: list[_Region], replacements: list[str]) -> str:
    """Replace each region (markers included) with its replacement text."""
    out: list[str] = []
    cursor = 0
    for region, replacement in zip(regions, replacements):
        out.extend(lines[cursor : region.start])
        out.append(replacement)
        cursor = region.end + 1
    out.extend(lines[cursor:])
    return "".join(out)


def _read(path: Path) -> str:
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def _write(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(text)


class MergeTransaction:
    """One merge attempt on one worktree.

    Leaving the ``with`` block without a successful resolve aborts the
    attempt, so the worktree is never left half-merged:

        with resolver.attempt(path) as txn:
            conflicts = txn.detect()
            txn.resolve({c.conflict_id: ConflictResolution(...) for c in conflicts})
    """

    def __init__(self, resolver: "MergeResolver", worktree_path: Path):
        self._resolver = resolver
        self.worktree_path = worktree_path
        self.conflicts: list[MergeConflict] | None = None
        self.result: MergeResult | None = None

    def detect(self) -> list[MergeConflict]:
        self.conflicts = self._resolver.detect_conflicts(self.worktree_path)
        return self.conflicts

    def resolve(
        self,
        resolutions: dict[str, ConflictResolution] | None = None,
        message: str | None = None,
    ) -> MergeResult:
        if self.conflicts is None:
            self.detect()
        self.result = self._resolver.resolve_conflict(
            MergeResolution(
                worktree_path=self.worktree_path,
                resolutions=resolutions or {},
                message=message,
            )
        )
        return self.result

    def abort(self) -> MergeResult:
        self.result = self._resolver.abort_merge(self.worktree_path)
        return self.result

    def __enter__(self) -> "MergeTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.result is None:
            try:
                self.abort()
            except Exception as abort_error:
                if exc_type is None:
                    raise
                logger.error(f"Abort after failed merge attempt also failed: {abort_error}")
        return False


class MergeResolver:
    """Detect, resolve, or abort integration of a worktree into its target."""

    def __init__(self, manager: WorktreeManager, git: GitGateway | None = None):
        self.manager = manager
        self.git = git or manager.git
        self._attempts: dict[Path, _Attempt] = {}
        self._attempts_lock = threading.Lock()
        self._merge_lock = FileLock(str(manager.repo_path / ".treeflow" / "merge.lock"))

    def attempt(self, worktree_path: Path | str) -> MergeTransaction:
        return MergeTransaction(self, self.manager.resolve_path(worktree_path))

    def _worktree(self, worktree_path: Path | str) -> tuple[Path, Worktree]:
        key = self.manager.resolve_path(worktree_path)
        worktree = self.manager.get_info(key)
        if worktree is None:
            raise WorktreeNotFoundError(key)
        return key, worktree

    def _check_idle(self, key: Path) -> None:
        if self.manager.is_busy(key):
            raise WorktreeBusyError(key)

    def _record(self, event_type: EventType, key: Path, **payload) -> None:
        if self.manager.db is None:
            return
        self.manager.db.append_event(
            Event(event_type=event_type, worktree_path=str(key), payload=payload)
        )

    # --- Detection ---

    def detect_conflicts(self, worktree_path: Path | str) -> list[MergeConflict]:
        """Dry-run the integration and return its conflicts (empty when clean).

        Runs in a detached scratch checkout of the worktree's HEAD; neither
        the worktree nor the target branch is modified. Repeatable.

        Raises:
            WorktreeNotFoundError: Path is not a registered worktree.
            WorktreeBusyError: A step is running in the worktree.
            MergeError: The worktree has no integration target.
        """
        key, worktree = self._worktree(worktree_path)
        with self.manager.registry.path_lock(key):
            self._check_idle(key)
            target_branch = worktree.target_branch
            if not target_branch:
                raise MergeError(f"Worktree {key} has no integration target branch")
            target_head = self.git.resolve_commit(target_branch)
            if target_head is None:
                raise MergeError(f"Target branch does not resolve: {target_branch}")
            source_head = self.git.head(key)

            scratch = self.manager.add_scratch(source_head)
            try:
                clean = self.git.merge_no_commit(scratch, target_head)
                conflicts = [] if clean else self._collect_conflicts(scratch)
                if self.git.merge_in_progress(scratch):
                    self.git.merge_abort(scratch)
            finally:
                self.manager.remove_scratch(scratch)

            with self._attempts_lock:
                self._attempts[key] = _Attempt(
                    worktree=worktree,
                    target_branch=target_branch,
                    source_head=source_head,
                    target_head=target_head,
                    conflicts=conflicts,
                )

        if conflicts:
            logger.info(f"Detected {len(conflicts)} conflict(s) merging {target_branch} into {key}")
        return [c.model_copy() for c in conflicts]

    def _collect_conflicts(self, cwd: Path) -> list[MergeConflict]:
        conflicts: list[MergeConflict] = []
        for entry in self.git.unmerged(cwd):
            file_path = cwd / entry.path
            if entry.has_source and entry.has_target and file_path.is_file():
                text = file_path.read_text(encoding="utf-8", errors="replace")
                regions = parse_conflicts(entry.path, text)
                if regions:
                    conflicts.extend(regions)
                    continue
            conflicts.append(
                MergeConflict(
                    path=entry.path,
                    index=0,
                    source=self.git.show_stage(cwd, 2, entry.path) if entry.has_source else "",
                    target=self.git.show_stage(cwd, 3, entry.path) if entry.has_target else "",
                    base=self.git.show_stage(cwd, 1, entry.path) if 1 in entry.stages else None,
                    source_deleted=not entry.has_source,
                    target_deleted=not entry.has_target,
                )
            )
        return conflicts

    # --- Resolution ---

    def resolve_conflict(self, resolution: MergeResolution) -> MergeResult:
        """Apply resolution to the detected conflicts and complete the integration.

        Raises:
            NoMergeInProgressError: detect_conflicts was not called first.
            ResolutionIncompleteError: A detected conflict has no resolution.
                Nothing is modified.
            StaleConflictsError: The worktree or target moved since detection.
            WorktreeBusyError / WorktreeDirtyError: The worktree cannot be
                merged right now. Nothing is modified.
        """
        key, _ = self._worktree(resolution.worktree_path)
        with self._attempts_lock:
            attempt = self._attempts.get(key)
        if attempt is None:
            raise NoMergeInProgressError(f"No detected conflicts pending for {key}")

        detected = {c.conflict_id for c in attempt.conflicts}
        missing = [c.conflict_id for c in attempt.conflicts if c.conflict_id not in resolution.resolutions]
        if missing:
            raise ResolutionIncompleteError(missing)
        unknown = sorted(set(resolution.resolutions) - detected)
        if unknown:
            raise UnknownConflictError(unknown)

        message = resolution.message or (
            f"Merge {attempt.target_branch} into {attempt.worktree.branch}"
        )
        commit = self._integrate(key, attempt, resolution.resolutions, message)

        status = (
            MergeStatus.MERGED_WITH_RESOLUTIONS if attempt.conflicts else MergeStatus.MERGED_CLEAN
        )
        self._record(
            EventType.MERGE_COMPLETED,
            key,
            status=status.value,
            commit=commit,
            target_branch=attempt.target_branch,
            conflicts=len(attempt.conflicts),
        )
        logger.info(f"Integrated {key} into {attempt.target_branch} at {commit[:12]}")
        return MergeResult(
            status=status,
            commit=commit,
            conflicts=attempt.conflicts,
            message=message,
        )

    def merge(self, worktree_path: Path | str, message: str | None = None) -> MergeResult:
        """Integrate if clean; otherwise report the conflicts without touching anything."""
        key = self.manager.resolve_path(worktree_path)
        conflicts = self.detect_conflicts(key)
        if conflicts:
            self._record(EventType.MERGE_CONFLICTS, key, conflicts=[c.conflict_id for c in conflicts])
            return MergeResult(
                status=MergeStatus.CONFLICTS_PENDING,
                conflicts=conflicts,
                message=f"{len(conflicts)} conflict(s) need resolution",
            )
        return self.resolve_conflict(MergeResolution(worktree_path=key, message=message))

    def _integrate(
        self,
        key: Path,
        attempt: _Attempt,
        resolutions: dict[str, ConflictResolution],
        message: str,
    ) -> str:
        with self.manager.registry.path_lock(key), self._merge_lock:
            self._check_idle(key)
            # Keeps a workflow from starting in the worktree mid-merge
            with self.manager.busy(key):
                changes = self.git.status(key)
                if changes:
                    raise WorktreeDirtyError(key, [c.path for c in changes])
                if self.git.head(key) != attempt.source_head or (
                    self.git.resolve_commit(attempt.target_branch) != attempt.target_head
                ):
                    self._discard_attempt(key)
                    raise StaleConflictsError(
                        f"{key} or {attempt.target_branch} moved since conflicts were detected"
                    )

                try:
                    clean = self.git.merge_no_commit(key, attempt.target_head)
                    if not clean:
                        self._apply_resolutions(key, attempt, resolutions)
                    if self.git.merge_in_progress(key):
                        commit = self.git.commit(key, message)
                    else:
                        commit = self.git.head(key)  # Target already contained
                except BaseException:
                    if self.git.merge_in_progress(key):
                        self.git.merge_abort(key)
                    raise

                try:
                    self._advance_target(attempt.target_branch, attempt.target_head, commit)
                except BaseException:
                    self.git.reset_hard(key, attempt.source_head)
                    raise

        self._discard_attempt(key)
        return commit

    def _apply_resolutions(
        self, key: Path, attempt: _Attempt, resolutions: dict[str, ConflictResolution]
    ) -> None:
        by_file: dict[str, list[MergeConflict]] = {}
        for conflict in attempt.conflicts:
            by_file.setdefault(conflict.path, []).append(conflict)

        unmerged = {entry.path for entry in self.git.unmerged(key)}
        if unmerged != set(by_file):
            raise StaleConflictsError(
                f"Merge in {key} conflicts on {sorted(unmerged)}, detected {sorted(by_file)}"
            )

        for rel, conflicts in by_file.items():
            first = conflicts[0]
            if first.markers is None:
                self._resolve_whole_file(key, first, resolutions[first.conflict_id])
                continue

            file_path = key / rel
            lines = _read(file_path).splitlines(keepends=True)
            regions = _find_regions(lines)
            if len(regions) != len(conflicts):
                raise StaleConflictsError(
                    f"{rel}: {len(regions)} conflict region(s), detected {len(conflicts)}"
                )
            replacements = []
            for conflict, region in zip(conflicts, regions):
                choice = resolutions[conflict.conflict_id]
                if choice.strategy == ResolutionStrategy.TAKE_SOURCE:
                    replacements.append(region.source)
                elif choice.strategy == ResolutionStrategy.TAKE_TARGET:
                    replacements.append(region.target)
                else:
                    content = choice.content or ""
                    if content and not content.endswith("\n") and lines[region.end].endswith("\n"):
                        content += "\n"
                    replacements.append(content)
            _write(file_path, splice_resolutions(lines, regions, replacements))
            self.git.add(key, [rel])

    def _resolve_whole_file(
        self, key: Path, conflict: MergeConflict, choice: ConflictResolution
    ) -> None:
        rel = conflict.path
        if choice.strategy == ResolutionStrategy.CUSTOM:
            _write(key / rel, choice.content or "")
            self.git.add(key, [rel])
            return
        take_source = choice.strategy == ResolutionStrategy.TAKE_SOURCE
        deleted = conflict.source_deleted if take_source else conflict.target_deleted
        if deleted:
            self.git.remove_paths(key, [rel])
            return
        self.git.checkout_stage(key, "ours" if take_source else "theirs", rel)
        self.git.add(key, [rel])

    def _advance_target(self, branch: str, old: str, new: str) -> None:
        """Fast-forward branch from old to new, in its checkout if it has one."""
        for entry in self.git.worktree_list():
            if entry.branch == branch:
                self.git.merge_fast_forward(entry.path, new)
                return
        self.git.update_branch(branch, new, old)

    def _discard_attempt(self, key: Path) -> _Attempt | None:
        with self._attempts_lock:
            return self._attempts.pop(key, None)

    # --- Abort ---

    def abort_merge(self, worktree_path: Path | str) -> MergeResult:
        """Drop the pending attempt and revert any in-progress merge in the worktree.

        A no-op (still reported as aborted) when nothing is in progress.
        """
        key, _ = self._worktree(worktree_path)
        with self.manager.registry.path_lock(key):
            self._check_idle(key)
            attempt = self._discard_attempt(key)
            if self.git.merge_in_progress(key):
                self.git.merge_abort(key)
                logger.info(f"Aborted in-progress merge in {key}")
        self._record(EventType.MERGE_ABORTED, key)
        return MergeResult(
            status=MergeStatus.ABORTED,
            conflicts=attempt.conflicts if attempt else [],
            message="Merge aborted",
        )

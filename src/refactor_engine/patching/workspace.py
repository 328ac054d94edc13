"""Disk-backed working tree used by the Patching and Validating phases."""

import logging
from pathlib import Path

from refactor_engine.models.diff_models import FileTree, PatchSet, RollbackPlan
from refactor_engine.patching.applier import apply_patch_set, invert_patch_set
from refactor_engine.patching.exceptions import WorkspaceError

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({".git", "node_modules", "dist", "build", "coverage", "__pycache__"})


class Workspace:
    """Reads and writes files below a repository root.

    All paths are relative POSIX paths; anything resolving outside the
    root is rejected with WorkspaceError.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise WorkspaceError(f"Repository path does not exist: {root}")
        # Inverse of the patch currently on disk, if any
        self.pending_rollback: RollbackPlan | None = None

    def _resolve(self, relative_path: str) -> Path:
        candidate = Path(relative_path)
        if candidate.is_absolute() or ".." in candidate.parts:
            raise WorkspaceError(f"Path escapes the repository root: '{relative_path}'")
        target = (self.root / candidate).resolve()
        if not target.is_relative_to(self.root):
            raise WorkspaceError(
                f"Path traversal attempt detected: '{relative_path}' "
                f"resolves outside of the repository root."
            )
        return target

    def glob(self, pattern: str) -> list[str]:
        """Return sorted relative paths of files matching ``pattern``."""
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise WorkspaceError(f"Scope pattern escapes the repository root: '{pattern}'")
        matches = []
        for path in self.root.glob(pattern):
            relative = path.relative_to(self.root)
            if not path.is_file() or IGNORED_DIRS.intersection(relative.parts):
                continue
            matches.append(relative.as_posix())
        return sorted(matches)

    def read_paths(self, paths: list[str]) -> dict[str, str | None]:
        contents: dict[str, str | None] = {}
        for relative_path in paths:
            target = self._resolve(relative_path)
            if not target.is_file():
                contents[relative_path] = None
                continue
            try:
                with open(target, "r", encoding="utf-8", newline="") as handle:
                    contents[relative_path] = handle.read()
            except (OSError, UnicodeDecodeError) as exc:
                raise WorkspaceError(f"Cannot read '{relative_path}': {exc}") from exc
        return contents

    def snapshot(self, paths: list[str]) -> FileTree:
        """Snapshot the existing files among ``paths``."""
        contents = self.read_paths(paths)
        return FileTree(files={path: text for path, text in contents.items() if text is not None})

    def write(self, changes: dict[str, str | None]) -> None:
        """Write ``changes`` to disk; None deletes the file."""
        for relative_path, content in changes.items():
            target = self._resolve(relative_path)
            if content is None:
                target.unlink(missing_ok=True)
                logger.debug("deleted %s", relative_path)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
                logger.debug("wrote %s (%d chars)", relative_path, len(content))

    def commit(self, patch_set: PatchSet) -> tuple[FileTree, FileTree, RollbackPlan]:
        """Apply ``patch_set`` to disk all-or-nothing.

        The rollback plan is computed before any file is written; if a write
        fails midway, files already written are restored from the snapshot.

        Returns:
            (before, after, rollback_plan) for the touched paths.

        Raises:
            HunkConflict, PathCollision: If the patch does not apply; the
                tree is left untouched.
            WorkspaceError: If writing fails; the tree is restored.
        """
        touched = patch_set.touched_paths()
        before = self.snapshot(touched)
        rollback_plan = invert_patch_set(patch_set, before)
        after = apply_patch_set(patch_set, before)

        written: list[str] = []
        try:
            for path in touched:
                self.write({path: after.read(path)})
                written.append(path)
        except OSError as exc:
            logger.error("write failed after %d file(s); restoring snapshot", len(written))
            self.write({path: before.read(path) for path in written})
            raise WorkspaceError(f"Failed to write patch to disk: {exc}") from exc

        self.pending_rollback = rollback_plan
        logger.info("committed patch touching %d file(s)", len(touched))
        return before, after, rollback_plan

    def rollback(self, plan: RollbackPlan) -> FileTree:
        """Apply a RollbackPlan to disk and return the restored snapshot."""
        paths = plan.paths()
        current = self.snapshot(paths)
        restored = apply_patch_set(plan.as_patch_set(), current)
        self.write({path: restored.read(path) for path in paths})
        self.pending_rollback = None
        logger.info("rolled back %d file(s)", len(paths))
        return restored

"""Exact apply and invert operations for PatchSets against a FileTree.

Both functions are pure: they never mutate the input tree. Hunks must match
the file content exactly at their recorded offset; there is no fuzzy context
search, so every applied change stays reviewable and reversible.
"""

from refactor_engine.models.diff_models import (
    FileDiff,
    FileTree,
    Hunk,
    PatchSet,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
)
from refactor_engine.patching.exceptions import HunkConflict, PathCollision
from refactor_engine.patching.unified_diff import split_lines


def apply_file_diff(diff: FileDiff, content: str) -> str:
    """Apply the hunks of one FileDiff to ``content``.

    Raises:
        HunkConflict: If a hunk's context/removed lines differ from the file
            at its recorded offset, or hunks overlap.
    """
    lines = split_lines(content)
    out: list[str] = []
    cursor = 0

    for number, hunk in enumerate(diff.hunks, start=1):
        start = hunk.old_index
        if start < cursor:
            raise HunkConflict(diff.path, f"hunk {number} overlaps the previous hunk", start + 1)
        expected = hunk.old_lines()
        actual = lines[start:start + len(expected)]
        if actual != expected:
            mismatch = _first_mismatch(expected, actual)
            raise HunkConflict(
                diff.path,
                f"hunk {number} does not match the current file content",
                start + mismatch + 1,
            )
        out.extend(lines[cursor:start])
        out.extend(hunk.new_lines())
        cursor = start + len(expected)

    out.extend(lines[cursor:])
    return "".join(out)


def _first_mismatch(expected: list[str], actual: list[str]) -> int:
    for offset, (want, have) in enumerate(zip(expected, actual)):
        if want != have:
            return offset
    return min(len(expected), len(actual))


def _check_collisions(patch_set: PatchSet) -> None:
    collisions = patch_set.path_collisions()
    if collisions:
        raise PathCollision(
            collisions, "path appears in more than one of modified/created/deleted"
        )


def apply_patch_set(patch_set: PatchSet, tree: FileTree) -> FileTree:
    """Apply a PatchSet to a tree and return the resulting tree.

    Raises:
        PathCollision: If the one-state-per-path invariant is violated or a
            created file already exists.
        HunkConflict: If a modified or deleted file is missing, or any hunk
            does not match exactly.
    """
    _check_collisions(patch_set)
    changes: dict[str, str | None] = {}

    for diff in patch_set.file_diffs:
        current = tree.read(diff.path)
        if current is None:
            raise HunkConflict(diff.path, "modified file does not exist")
        changes[diff.path] = apply_file_diff(diff, current)

    for path, content in patch_set.new_files.items():
        if tree.exists(path):
            raise PathCollision([path], "created file already exists")
        changes[path] = content

    for path in patch_set.deleted_files:
        if not tree.exists(path):
            raise HunkConflict(path, "deleted file does not exist")
        changes[path] = None

    return tree.with_changes(changes)


def _renumber(diff: FileDiff) -> FileDiff:
    """Recompute each hunk's new_start from the old offsets and prior deltas."""
    delta = 0
    hunks: list[Hunk] = []
    for hunk in diff.hunks:
        new_index = hunk.old_index + delta
        hunks.append(
            Hunk(
                old_start=hunk.old_start,
                new_start=new_index + 1 if hunk.new_count else new_index,
                lines=hunk.lines,
            )
        )
        delta += hunk.new_count - hunk.old_count
    return FileDiff(path=diff.path, hunks=tuple(hunks), state=diff.state)


def invert_patch_set(patch_set: PatchSet, tree: FileTree) -> RollbackPlan:
    """Compute the exact inverse of ``patch_set`` against the pre-apply ``tree``.

    Must succeed before the patch is committed; any error here aborts the
    apply instead of leaving an unrecoverable state.

    Raises:
        PathCollision, HunkConflict: As for apply_patch_set.
    """
    _check_collisions(patch_set)
    steps: list[RollbackStep] = []

    for diff in patch_set.file_diffs:
        current = tree.read(diff.path)
        if current is None:
            raise HunkConflict(diff.path, "modified file does not exist")
        apply_file_diff(diff, current)
        steps.append(
            RollbackStep(
                path=diff.path,
                action=RollbackAction.REVERT,
                inverse_diff=_renumber(diff).inverted(),
            )
        )

    for path in patch_set.new_files:
        if tree.exists(path):
            raise PathCollision([path], "created file already exists")
        steps.append(RollbackStep(path=path, action=RollbackAction.DELETE))

    for path in patch_set.deleted_files:
        prior = tree.read(path)
        if prior is None:
            raise HunkConflict(path, "deleted file does not exist")
        steps.append(
            RollbackStep(path=path, action=RollbackAction.RESTORE, prior_content=prior)
        )

    return RollbackPlan(steps=tuple(steps))

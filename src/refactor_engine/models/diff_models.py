"""Models for representing patch sets, file trees and rollback plans."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FileState(str, Enum):
    """Existence state of a file targeted by a change."""

    MODIFIED = "modified"
    CREATED = "created"
    DELETED = "deleted"


class HunkLine(BaseModel):
    """A single context, removed or added line of a hunk."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[" ", "-", "+"]
    text: str  # Includes the trailing "\n" unless the file ends without one


class Hunk(BaseModel):
    """A contiguous, positioned block of changed lines."""

    model_config = ConfigDict(frozen=True)

    old_start: int = Field(ge=0)
    new_start: int = Field(ge=0)
    lines: tuple[HunkLine, ...]

    @property
    def old_count(self) -> int:
        return sum(1 for line in self.lines if line.kind != "+")

    @property
    def new_count(self) -> int:
        return sum(1 for line in self.lines if line.kind != "-")

    @property
    def old_index(self) -> int:
        """0-based index of the first line this hunk consumes."""
        return self.old_start - 1 if self.old_count > 0 else self.old_start

    def old_lines(self) -> list[str]:
        return [line.text for line in self.lines if line.kind != "+"]

    def new_lines(self) -> list[str]:
        return [line.text for line in self.lines if line.kind != "-"]

    def inverted(self) -> "Hunk":
        swap = {" ": " ", "-": "+", "+": "-"}
        return Hunk(
            old_start=self.new_start,
            new_start=self.old_start,
            lines=tuple(HunkLine(kind=swap[line.kind], text=line.text) for line in self.lines),
        )


class FileDiff(BaseModel):
    """Represents a positioned diff for a single file."""

    model_config = ConfigDict(frozen=True)

    path: str  # Relative POSIX path from repo root
    hunks: tuple[Hunk, ...]
    state: FileState = FileState.MODIFIED

    @model_validator(mode="after")
    def _check_hunk_order(self) -> "FileDiff":
        for previous, current in zip(self.hunks, self.hunks[1:]):
            if previous.old_index + previous.old_count > current.old_index:
                raise ValueError(
                    f"hunks for {self.path} overlap or are out of order "
                    f"(@@ -{previous.old_start} then @@ -{current.old_start})"
                )
        return self

    def inverted(self) -> "FileDiff":
        return FileDiff(
            path=self.path,
            hunks=tuple(hunk.inverted() for hunk in self.hunks),
            state=self.state,
        )


class PatchSet(BaseModel):
    """The complete set of modifications, creations and deletions of one attempt."""

    model_config = ConfigDict(frozen=True)

    file_diffs: tuple[FileDiff, ...] = ()
    new_files: dict[str, str] = Field(default_factory=dict)
    deleted_files: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_diff_states(self) -> "PatchSet":
        # Creations and deletions are carried by new_files and deleted_files
        for diff in self.file_diffs:
            if diff.state != FileState.MODIFIED:
                raise ValueError(
                    f"file_diffs entry for {diff.path} must be modified, not {diff.state.value}; "
                    "use new_files or deleted_files"
                )
        return self

    def path_collisions(self) -> list[str]:
        """Return every path that appears in more than one change category."""
        seen: dict[str, int] = {}
        for path in [diff.path for diff in self.file_diffs]:
            seen[path] = seen.get(path, 0) + 1
        for path in self.new_files:
            seen[path] = seen.get(path, 0) + 1
        for path in self.deleted_files:
            seen[path] = seen.get(path, 0) + 1
        return sorted(path for path, count in seen.items() if count > 1)

    def touched_paths(self) -> list[str]:
        paths = [diff.path for diff in self.file_diffs]
        paths.extend(self.new_files)
        paths.extend(self.deleted_files)
        return paths

    def is_empty(self) -> bool:
        return not (self.file_diffs or self.new_files or self.deleted_files)


class FileTree(BaseModel):
    """Immutable snapshot of file contents keyed by relative path."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, str] = Field(default_factory=dict)

    def exists(self, path: str) -> bool:
        return path in self.files

    def read(self, path: str) -> str | None:
        return self.files.get(path)

    def with_changes(self, changes: dict[str, str | None]) -> "FileTree":
        """Return a new tree with ``changes`` applied (``None`` deletes)."""
        updated = dict(self.files)
        for path, content in changes.items():
            if content is None:
                updated.pop(path, None)
            else:
                updated[path] = content
        return FileTree(files=updated)


class RollbackAction(str, Enum):
    REVERT = "revert"    # Apply inverse hunks to a modified file
    DELETE = "delete"    # Remove a file the patch created
    RESTORE = "restore"  # Recreate a file the patch deleted


class RollbackStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    action: RollbackAction
    inverse_diff: FileDiff | None = None
    prior_content: str | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> "RollbackStep":
        if self.action == RollbackAction.REVERT and self.inverse_diff is None:
            raise ValueError(f"revert step for {self.path} needs an inverse diff")
        if self.action == RollbackAction.RESTORE and self.prior_content is None:
            raise ValueError(f"restore step for {self.path} needs its prior content")
        return self


class RollbackPlan(BaseModel):
    """Precomputed exact inverse of an applied PatchSet."""

    model_config = ConfigDict(frozen=True)

    steps: tuple[RollbackStep, ...] = ()

    def as_patch_set(self) -> PatchSet:
        """Express the inverse operations as a PatchSet applicable to the patched tree."""
        file_diffs: list[FileDiff] = []
        new_files: dict[str, str] = {}
        deleted: list[str] = []
        for step in self.steps:
            if step.action == RollbackAction.REVERT and step.inverse_diff is not None:
                file_diffs.append(step.inverse_diff)
            elif step.action == RollbackAction.RESTORE:
                new_files[step.path] = step.prior_content or ""
            elif step.action == RollbackAction.DELETE:
                deleted.append(step.path)
        return PatchSet(
            file_diffs=tuple(file_diffs),
            new_files=new_files,
            deleted_files=tuple(deleted),
        )

    def paths(self) -> list[str]:
        return [step.path for step in self.steps]

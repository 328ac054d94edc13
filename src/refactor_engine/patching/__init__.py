"""Patch parsing, exact application, inversion and working-tree access."""

from refactor_engine.patching.applier import (
    apply_file_diff,
    apply_patch_set,
    invert_patch_set,
)
from refactor_engine.patching.exceptions import (
    HunkConflict,
    ParseError,
    PatchError,
    PathCollision,
    WorkspaceError,
)
from refactor_engine.patching.unified_diff import (
    generate_file_diff,
    parse_diffs,
    render_diffs,
    render_file_diff,
    split_lines,
)
from refactor_engine.patching.workspace import Workspace

__all__ = [
    "HunkConflict",
    "ParseError",
    "PatchError",
    "PathCollision",
    "Workspace",
    "WorkspaceError",
    "apply_file_diff",
    "apply_patch_set",
    "generate_file_diff",
    "invert_patch_set",
    "parse_diffs",
    "render_diffs",
    "render_file_diff",
    "split_lines",
]

"""Unit tests for diff, tree and rollback models."""

import pytest

from refactor_engine.models import (
    FileDiff,
    FileState,
    FileTree,
    Hunk,
    HunkLine,
    PatchSet,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
)


def make_hunk(old_start: int, new_start: int, lines: list[tuple[str, str]]) -> Hunk:
    return Hunk(
        old_start=old_start,
        new_start=new_start,
        lines=tuple(HunkLine(kind=kind, text=text) for kind, text in lines),
    )


# ---------------------------------------------------------------------------
# Hunk
# ---------------------------------------------------------------------------

def test_hunk_counts_are_derived_from_lines():
    hunk = make_hunk(3, 3, [(" ", "a\n"), ("-", "b\n"), ("+", "B\n"), ("+", "C\n")])
    assert hunk.old_count == 2
    assert hunk.new_count == 3
    assert hunk.old_lines() == ["a\n", "b\n"]
    assert hunk.new_lines() == ["a\n", "B\n", "C\n"]


def test_pure_insertion_hunk_indexes_after_its_start_line():
    # "@@ -4,0 +5,1 @@" inserts after old line 4
    hunk = make_hunk(4, 5, [("+", "new\n")])
    assert hunk.old_count == 0
    assert hunk.old_index == 4


def test_hunk_inverted_swaps_sides():
    hunk = make_hunk(2, 5, [(" ", "x\n"), ("-", "old\n"), ("+", "new\n")])
    inverted = hunk.inverted()
    assert inverted.old_start == 5
    assert inverted.new_start == 2
    assert [line.kind for line in inverted.lines] == [" ", "+", "-"]


def test_hunk_rejects_unknown_line_kind():
    with pytest.raises(ValueError):
        HunkLine(kind="?", text="x\n")


# ---------------------------------------------------------------------------
# FileDiff
# ---------------------------------------------------------------------------

def test_file_diff_defaults_to_modified():
    diff = FileDiff(path="src/a.ts", hunks=(make_hunk(1, 1, [("-", "a\n"), ("+", "b\n")]),))
    assert diff.state == FileState.MODIFIED


def test_file_diff_rejects_overlapping_hunks():
    first = make_hunk(1, 1, [(" ", "a\n"), ("-", "b\n"), (" ", "c\n")])
    second = make_hunk(2, 2, [("-", "b\n"), ("+", "B\n")])
    with pytest.raises(ValueError, match="overlap"):
        FileDiff(path="src/a.ts", hunks=(first, second))


def test_file_diff_rejects_out_of_order_hunks():
    late = make_hunk(10, 10, [("-", "x\n")])
    early = make_hunk(2, 2, [("-", "y\n")])
    with pytest.raises(ValueError):
        FileDiff(path="src/a.ts", hunks=(late, early))


def test_file_diff_is_frozen():
    diff = FileDiff(path="src/a.ts", hunks=())
    with pytest.raises(ValueError):
        diff.path = "src/b.ts"


# ---------------------------------------------------------------------------
# PatchSet
# ---------------------------------------------------------------------------

def test_patch_set_reports_paths_in_more_than_one_category():
    diff = FileDiff(path="src/a.ts", hunks=(make_hunk(1, 1, [("-", "a\n"), ("+", "b\n")]),))
    patch_set = PatchSet(
        file_diffs=(diff,),
        new_files={"src/b.ts": "x\n"},
        deleted_files=("src/a.ts", "src/c.ts"),
    )
    assert patch_set.path_collisions() == ["src/a.ts"]
    assert patch_set.touched_paths() == ["src/a.ts", "src/b.ts", "src/a.ts", "src/c.ts"]


def test_patch_set_empty():
    assert PatchSet().is_empty()
    assert not PatchSet(deleted_files=("src/a.ts",)).is_empty()


@pytest.mark.parametrize("state", [FileState.CREATED, FileState.DELETED])
def test_patch_set_file_diffs_must_be_modifications(state):
    diff = FileDiff(path="src/a.ts", hunks=(make_hunk(0, 1, [("+", "a\n")]),), state=state)
    with pytest.raises(ValueError, match="use new_files or deleted_files"):
        PatchSet(file_diffs=(diff,))


# ---------------------------------------------------------------------------
# FileTree
# ---------------------------------------------------------------------------

def test_file_tree_with_changes_returns_new_tree():
    tree = FileTree(files={"a.ts": "1\n", "b.ts": "2\n"})
    updated = tree.with_changes({"a.ts": "one\n", "b.ts": None, "c.ts": "3\n"})

    assert updated.files == {"a.ts": "one\n", "c.ts": "3\n"}
    assert tree.files == {"a.ts": "1\n", "b.ts": "2\n"}
    assert updated.exists("c.ts")
    assert updated.read("b.ts") is None


# ---------------------------------------------------------------------------
# RollbackPlan
# ---------------------------------------------------------------------------

def test_rollback_plan_as_patch_set_maps_each_action():
    inverse = FileDiff(path="src/a.ts", hunks=(make_hunk(1, 1, [("-", "b\n"), ("+", "a\n")]),))
    plan = RollbackPlan(
        steps=(
            RollbackStep(path="src/a.ts", action=RollbackAction.REVERT, inverse_diff=inverse),
            RollbackStep(path="src/new.ts", action=RollbackAction.DELETE),
            RollbackStep(path="src/old.ts", action=RollbackAction.RESTORE, prior_content="old\n"),
        )
    )
    patch_set = plan.as_patch_set()

    assert patch_set.file_diffs == (inverse,)
    assert patch_set.deleted_files == ("src/new.ts",)
    assert patch_set.new_files == {"src/old.ts": "old\n"}
    assert plan.paths() == ["src/a.ts", "src/new.ts", "src/old.ts"]


def test_revert_step_requires_inverse_diff():
    with pytest.raises(ValueError, match="needs an inverse diff"):
        RollbackStep(path="src/a.ts", action=RollbackAction.REVERT)


def test_restore_step_requires_prior_content():
    with pytest.raises(ValueError, match="needs its prior content"):
        RollbackStep(path="src/old.ts", action=RollbackAction.RESTORE)

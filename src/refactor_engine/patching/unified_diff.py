"""Unified diff generation, rendering and parsing for FileDiff hunks."""

import difflib
import re

from refactor_engine.models.diff_models import FileDiff, Hunk, HunkLine
from refactor_engine.patching.exceptions import ParseError

NO_NEWLINE_MARKER = "\\ No newline at end of file"
DEFAULT_CONTEXT_LINES = 3
HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def split_lines(content: str) -> list[str]:
    """Split on LF only, keeping terminators; the last line may lack one."""
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def generate_file_diff(
    path: str,
    original_content: str,
    modified_content: str,
    context: int = DEFAULT_CONTEXT_LINES,
) -> FileDiff | None:
    """Build a positioned FileDiff between two versions of a file.

    Args:
        path: Relative path from repo root (e.g. "src/app.ts").
        original_content: File content before the change.
        modified_content: File content after the change.
        context: Number of context lines around each change.

    Returns:
        FileDiff with ordered, non-overlapping hunks, or None if the
        contents are identical.
    """
    if original_content == modified_content:
        return None

    original_lines = split_lines(original_content)
    modified_lines = split_lines(modified_content)
    matcher = difflib.SequenceMatcher(None, original_lines, modified_lines, autojunk=False)

    hunks: list[Hunk] = []
    for group in matcher.get_grouped_opcodes(context):
        lines: list[HunkLine] = []
        for tag, i1, i2, j1, j2 in group:
            if tag == "equal":
                lines.extend(HunkLine(kind=" ", text=text) for text in original_lines[i1:i2])
                continue
            if tag in ("replace", "delete"):
                lines.extend(HunkLine(kind="-", text=text) for text in original_lines[i1:i2])
            if tag in ("replace", "insert"):
                lines.extend(HunkLine(kind="+", text=text) for text in modified_lines[j1:j2])

        first_old, first_new = group[0][1], group[0][3]
        old_count = sum(1 for line in lines if line.kind != "+")
        new_count = sum(1 for line in lines if line.kind != "-")
        hunks.append(
            Hunk(
                old_start=first_old + 1 if old_count else first_old,
                new_start=first_new + 1 if new_count else first_new,
                lines=tuple(lines),
            )
        )

    return FileDiff(path=path, hunks=tuple(hunks))


def render_file_diff(diff: FileDiff) -> str:
    """Render one FileDiff as unified diff text (LF endings, no trailing newline)."""
    out = [f"--- {diff.path}", f"+++ {diff.path}"]
    for hunk in diff.hunks:
        out.append(
            f"@@ -{hunk.old_start},{hunk.old_count} +{hunk.new_start},{hunk.new_count} @@"
        )
        for line in hunk.lines:
            if line.text.endswith("\n"):
                out.append(line.kind + line.text[:-1])
            else:
                out.append(line.kind + line.text)
                out.append(NO_NEWLINE_MARKER)
    return "\n".join(out)


def render_diffs(diffs: list[FileDiff] | tuple[FileDiff, ...]) -> str:
    return "\n".join(render_file_diff(diff) for diff in diffs)


def _strip_prefixes(old_path: str, new_path: str) -> tuple[str, str]:
    # Tolerate git-style a/ b/ prefixes when both sides carry them
    if old_path.startswith("a/") and new_path.startswith("b/"):
        return old_path[2:], new_path[2:]
    return old_path, new_path


def parse_diffs(text: str) -> list[FileDiff]:
    """Parse unified diff text into FileDiff objects.

    Raises:
        ParseError: With the 1-based line number of the first problem.
    """
    if "\r" in text:
        line_number = text[: text.index("\r")].count("\n") + 1
        raise ParseError(line_number, "carriage return found; diffs must use LF line endings")

    lines = text.split("\n")
    diffs: list[FileDiff] = []
    index = 0

    while index < len(lines):
        line = lines[index]
        if not line.strip():
            index += 1
            continue
        if not line.startswith("--- "):
            raise ParseError(index + 1, f"expected '--- path' header, found {line[:40]!r}")
        if index + 1 >= len(lines) or not lines[index + 1].startswith("+++ "):
            raise ParseError(index + 2, "expected '+++ path' header")

        old_path, new_path = _strip_prefixes(line[4:].strip(), lines[index + 1][4:].strip())
        if old_path == "/dev/null" or new_path == "/dev/null":
            raise ParseError(
                index + 1, "file creation and deletion belong in NEW_FILES / DELETED_FILES"
            )
        if old_path != new_path:
            raise ParseError(index + 2, f"header paths differ: {old_path!r} vs {new_path!r}")
        header_line = index + 1
        index += 2

        hunks: list[Hunk] = []
        while index < len(lines) and lines[index].startswith("@@"):
            hunk, index = _parse_hunk(lines, index)
            hunks.append(hunk)

        if not hunks:
            raise ParseError(index + 1, f"no hunks found for {new_path}")

        try:
            diffs.append(FileDiff(path=new_path, hunks=tuple(hunks)))
        except ValueError as exc:
            raise ParseError(header_line, str(exc)) from exc

    return diffs


def _parse_hunk(lines: list[str], index: int) -> tuple[Hunk, int]:
    header = lines[index]
    match = HUNK_HEADER_RE.match(header)
    if match is None:
        raise ParseError(index + 1, f"malformed hunk header {header!r}")

    old_start = int(match.group(1))
    old_count = int(match.group(2)) if match.group(2) is not None else 1
    new_start = int(match.group(3))
    new_count = int(match.group(4)) if match.group(4) is not None else 1
    header_index = index
    index += 1

    body: list[HunkLine] = []
    old_seen = new_seen = 0
    while old_seen < old_count or new_seen < new_count:
        if index >= len(lines):
            raise ParseError(index, f"hunk at line {header_index + 1} ends early")
        raw = lines[index]
        if raw.startswith("\\"):
            body = _drop_newline(body, index)
            index += 1
            continue
        kind = raw[:1] if raw else " "
        if kind not in (" ", "-", "+"):
            raise ParseError(
                index + 1,
                f"hunk at line {header_index + 1} expects {old_count}/{new_count} lines, "
                f"found {old_seen}/{new_seen}",
            )
        body.append(HunkLine(kind=kind, text=raw[1:] + "\n"))
        if kind != "+":
            old_seen += 1
        if kind != "-":
            new_seen += 1
        index += 1

    if index < len(lines) and lines[index].startswith("\\"):
        body = _drop_newline(body, index)
        index += 1

    return Hunk(old_start=old_start, new_start=new_start, lines=tuple(body)), index


def _drop_newline(body: list[HunkLine], index: int) -> list[HunkLine]:
    if not body:
        raise ParseError(index + 1, "no-newline marker without a preceding line")
    last = body[-1]
    body[-1] = HunkLine(kind=last.kind, text=last.text[:-1])
    return body

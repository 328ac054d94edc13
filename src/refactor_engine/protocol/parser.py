"""Parsing of protocol documents, patch sections and clarification answers.

Parsing is partial: any deviation from the fixed layout is rejected with a
precise line number and nothing is partially accepted.
"""

import re

from refactor_engine.models.diff_models import PatchSet
from refactor_engine.models.protocol_models import (
    EMPTY_SECTION,
    SECTION_NAMES,
    ClarificationAnswer,
    ProtocolDocument,
    unescape_line,
)
from refactor_engine.patching.exceptions import ParseError
from refactor_engine.patching.unified_diff import NO_NEWLINE_MARKER, parse_diffs
from refactor_engine.protocol.exceptions import MalformedAnswer

FILE_HEADER_RE = re.compile(r"^=== FILE: (.+) ===$")
FILE_FOOTER = "=== END FILE ==="
# Every content line of a NEW_FILES block carries this prefix
FILE_LINE_PREFIX = "|"
ANSWER_RE = re.compile(r"^ANSWER:\s*(.*)$", re.IGNORECASE)
FILES_RE = re.compile(r"^FILES:\s*$", re.IGNORECASE)
CANCEL_RE = re.compile(r"^\s*CANCEL\s*$", re.IGNORECASE)
_HEADERS = {f"## {name}": name for name in SECTION_NAMES}


def parse_document(text: str) -> ProtocolDocument:
    """Parse the nine-section text produced by ProtocolDocument.to_text().

    Raises:
        ParseError: If a section is missing, duplicated or out of order.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    bodies: dict[str, list[str]] = {}
    expected = 0
    current: str | None = None

    for number, line in enumerate(lines, start=1):
        if line in _HEADERS:
            name = _HEADERS[line]
            if expected >= len(SECTION_NAMES) or name != SECTION_NAMES[expected]:
                wanted = SECTION_NAMES[expected] if expected < len(SECTION_NAMES) else "end of document"
                raise ParseError(number, f"section {name} out of order; expected {wanted}")
            current = name
            bodies[name] = []
            expected += 1
            continue

        if current is None:
            if line.strip():
                raise ParseError(number, f"content before the first section: {line[:40]!r}")
            continue
        bodies[current].append(line)

    if expected < len(SECTION_NAMES):
        raise ParseError(len(lines), f"missing section {SECTION_NAMES[expected]}")

    values: dict[str, str | None] = {}
    for name in SECTION_NAMES:
        body = "\n".join(bodies[name]).strip("\n")
        if body in ("", EMPTY_SECTION):
            values[name.lower()] = None
        else:
            values[name.lower()] = "\n".join(unescape_line(line) for line in body.split("\n"))
    return ProtocolDocument(**values)


def parse_new_files(text: str | None) -> dict[str, str]:
    """Parse NEW_FILES blocks into a path -> content mapping.

    Content lines are prefixed with FILE_LINE_PREFIX, so a file may contain
    any line, including the footer and the no-newline marker.
    """
    if not text:
        return {}
    files: dict[str, str] = {}
    path: str | None = None
    content: list[str] = []

    for number, line in enumerate(text.split("\n"), start=1):
        if path is None:
            if not line.strip():
                continue
            match = FILE_HEADER_RE.match(line)
            if match is None:
                raise ParseError(number, f"expected '=== FILE: path ===', found {line[:40]!r}")
            path = match.group(1).strip()
            if path in files:
                raise ParseError(number, f"duplicate new file {path}")
            content = []
            continue
        if line == FILE_FOOTER:
            files[path] = "".join(content)
            path = None
        elif line == NO_NEWLINE_MARKER:
            if not content or not content[-1].endswith("\n"):
                raise ParseError(number, "no-newline marker without a preceding line")
            content[-1] = content[-1][:-1]
        elif line.startswith(FILE_LINE_PREFIX):
            if content and not content[-1].endswith("\n"):
                raise ParseError(number, "content after the no-newline marker")
            content.append(line[len(FILE_LINE_PREFIX):] + "\n")
        else:
            raise ParseError(
                number, f"expected '{FILE_LINE_PREFIX}'-prefixed content line, found {line[:40]!r}"
            )

    if path is not None:
        raise ParseError(len(text.split("\n")), f"missing '{FILE_FOOTER}' for {path}")
    return files


def parse_path_list(text: str | None) -> tuple[str, ...]:
    if not text:
        return ()
    return tuple(line.strip() for line in text.split("\n") if line.strip())


def document_patch_set(document: ProtocolDocument) -> PatchSet:
    """Build the PatchSet carried by DIFFS, NEW_FILES and DELETED_FILES.

    Raises:
        ParseError: With a section-relative line number.
    """
    try:
        file_diffs = tuple(parse_diffs(document.diffs)) if document.diffs else ()
    except ParseError as exc:
        raise ParseError(exc.line_number, f"DIFFS: {exc.reason}") from exc
    try:
        new_files = parse_new_files(document.new_files)
    except ParseError as exc:
        raise ParseError(exc.line_number, f"NEW_FILES: {exc.reason}") from exc
    return PatchSet(
        file_diffs=file_diffs,
        new_files=new_files,
        deleted_files=parse_path_list(document.deleted_files),
    )


def parse_patch_set(text: str) -> PatchSet:
    """Inverse of renderer.render_patch_set."""
    return document_patch_set(parse_document(text))


def parse_answer(text: str) -> ClarificationAnswer:
    """Parse a clarification answer.

    Format::

        ANSWER: <free text, may continue on following lines>
        FILES:
        src/chosen.ts

    A lone ``CANCEL`` line cancels the request.

    Raises:
        MalformedAnswer: If the ANSWER slot is absent or empty, or text
            precedes it.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    if any(CANCEL_RE.match(line) for line in lines) and not any(
        ANSWER_RE.match(line) for line in lines
    ):
        return ClarificationAnswer(text="", cancel=True)

    answer_index: int | None = None
    for number, line in enumerate(lines):
        if ANSWER_RE.match(line):
            answer_index = number
            break
        if line.strip():
            raise MalformedAnswer(number + 1, f"unexpected content before 'ANSWER:': {line[:40]!r}")
    if answer_index is None:
        raise MalformedAnswer(1, "missing 'ANSWER:' free-text slot")

    answer_lines = [ANSWER_RE.match(lines[answer_index]).group(1)]
    selected: list[str] = []
    in_files = False
    for line in lines[answer_index + 1:]:
        if not in_files and FILES_RE.match(line):
            in_files = True
            continue
        if in_files:
            entry = line.strip().lstrip("-* ").strip()
            if entry:
                selected.append(entry)
        else:
            answer_lines.append(line)

    free_text = "\n".join(answer_lines).strip()
    if not free_text:
        raise MalformedAnswer(answer_index + 1, "'ANSWER:' slot is empty")
    return ClarificationAnswer(text=free_text, selected_paths=tuple(selected))

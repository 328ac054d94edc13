"""Models for the nine-section output protocol and clarification exchange."""

import re

from pydantic import BaseModel, ConfigDict

SECTION_NAMES: tuple[str, ...] = (
    "PLAN",
    "RISKS",
    "DIFFS",
    "NEW_FILES",
    "DELETED_FILES",
    "COMMANDS",
    "TESTS",
    "NOTES",
    "ROLLBACK",
)
EMPTY_SECTION = "None"
# Body lines that would read as a section header or as an empty section
# get one extra leading backslash when rendered
ESCAPE_PREFIX = "\\"
_ESCAPABLE_RE = re.compile(r"^\\*(## |None$)")


def escape_line(line: str) -> str:
    return ESCAPE_PREFIX + line if _ESCAPABLE_RE.match(line) else line


def unescape_line(line: str) -> str:
    if line.startswith(ESCAPE_PREFIX) and _ESCAPABLE_RE.match(line[1:]):
        return line[1:]
    return line


class ProtocolDocument(BaseModel):
    """Strict tagged record with one field per protocol section; None is empty."""

    model_config = ConfigDict(frozen=True)

    plan: str | None = None
    risks: str | None = None
    diffs: str | None = None
    new_files: str | None = None
    deleted_files: str | None = None
    commands: str | None = None
    tests: str | None = None
    notes: str | None = None
    rollback: str | None = None

    def sections(self) -> list[tuple[str, str | None]]:
        return [(name, getattr(self, name.lower())) for name in SECTION_NAMES]

    def to_text(self) -> str:
        blocks = []
        for name, body in self.sections():
            if body:
                content = "\n".join(escape_line(line) for line in body.rstrip("\n").split("\n"))
            else:
                content = EMPTY_SECTION
            blocks.append(f"## {name}\n{content}\n")
        return "\n".join(blocks)


class ClarificationQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    candidates: tuple[str, ...] = ()


class ClarificationAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    selected_paths: tuple[str, ...] = ()
    cancel: bool = False

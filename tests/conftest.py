import json
from pathlib import Path

import pytest

from refactor_engine.models import FileTree
from refactor_engine.patching.workspace import Workspace

DATE_UTILS_TS = """\
export function formatDate(d: Date): string {
  return d.toISOString().slice(0, 10);
}

function pad(value: number): string {
  return String(value).padStart(2, "0");
}

export function formatTime(d: Date): string {
  return `${pad(d.getHours())}:${pad(d.getMinutes())}`;
}
"""

FORMATTERS_TS = """\
import { formatDate } from "./dateUtils";

export function formatRange(start: Date, end: Date): string {
  return `${formatDate(start)} - ${formatDate(end)}`;
}
"""

PACKAGE_JSON = {
    "name": "sample-app",
    "version": "1.0.0",
    "scripts": {"typecheck": "tsc --noEmit", "test": "vitest run"},
    "dependencies": {"date-fns": "^3.0.0"},
}


def write_files(root: Path, files: dict[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8"))


def read_files(root: Path, paths: list[str]) -> dict[str, str | None]:
    contents = {}
    for relative in paths:
        target = root / relative
        contents[relative] = target.read_bytes().decode("utf-8") if target.exists() else None
    return contents


@pytest.fixture
def ts_repo(tmp_path) -> Path:
    """A small TypeScript repository with two sibling source files."""
    write_files(
        tmp_path,
        {
            "src/dateUtils.ts": DATE_UTILS_TS,
            "src/formatters.ts": FORMATTERS_TS,
            "package.json": json.dumps(PACKAGE_JSON, indent=2) + "\n",
            "node_modules/date-fns/index.ts": "export const ignored = 1;\n",
        },
    )
    return tmp_path


@pytest.fixture
def workspace(ts_repo) -> Workspace:
    return Workspace(ts_repo)


@pytest.fixture
def sample_tree() -> FileTree:
    return FileTree(
        files={
            "src/dateUtils.ts": DATE_UTILS_TS,
            "src/formatters.ts": FORMATTERS_TS,
        }
    )

"""Exceptions for patch parsing, application and working-tree operations."""


class PatchError(Exception):
    """Base exception for all patch operations."""


class HunkConflict(PatchError):
    """Raised when a hunk's context or removed lines do not match the file."""

    def __init__(self, path: str, message: str, line_number: int | None = None) -> None:
        self.path = path
        self.line_number = line_number
        location = f"{path}:{line_number}" if line_number is not None else path
        super().__init__(f"HunkConflict at {location}: {message}")


class PathCollision(PatchError):
    """Raised when a path is targeted by more than one change or already exists."""

    def __init__(self, paths: list[str], message: str) -> None:
        self.paths = list(paths)
        super().__init__(f"PathCollision on {', '.join(self.paths)}: {message}")


class ParseError(PatchError):
    """Raised when diff or protocol text cannot be parsed."""

    def __init__(self, line_number: int, message: str) -> None:
        self.line_number = line_number
        self.reason = message
        super().__init__(f"ParseError at line {line_number}: {message}")


class WorkspaceError(PatchError):
    """Raised when the working tree cannot be read or written safely."""

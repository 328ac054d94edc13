"""Exceptions raised at the protocol boundary."""


class ProtocolError(Exception):
    """Base exception for protocol rendering and parsing."""


class MalformedAnswer(ProtocolError):
    """Raised when a clarification answer lacks its free-text slot."""

    def __init__(self, line_number: int, message: str) -> None:
        self.line_number = line_number
        self.reason = message
        super().__init__(f"MalformedAnswer at line {line_number}: {message}")

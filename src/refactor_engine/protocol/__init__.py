"""Nine-section protocol rendering and parsing."""

from refactor_engine.protocol.exceptions import MalformedAnswer, ProtocolError
from refactor_engine.protocol.parser import (
    document_patch_set,
    parse_answer,
    parse_document,
    parse_new_files,
    parse_patch_set,
)
from refactor_engine.protocol.renderer import (
    render_document,
    render_new_files,
    render_patch_set,
    render_rollback,
)

__all__ = [
    "MalformedAnswer",
    "ProtocolError",
    "document_patch_set",
    "parse_answer",
    "parse_document",
    "parse_new_files",
    "parse_patch_set",
    "render_document",
    "render_new_files",
    "render_patch_set",
    "render_rollback",
]

"""Schemas for public API surface extraction."""

from pydantic import BaseModel, ConfigDict


class ApiSymbol(BaseModel):
    """A symbol a module exposes to its importers."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str  # "function" | "class" | "variable" | "type" | "reexport" | "default"
    signature: str = ""  # Normalised parameter/return/shape text; "" when opaque
    line: int | None = None

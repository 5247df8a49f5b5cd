"""Schema compilation error taxonomy.

Every failure of the build step is a ``SchemaCompilationError``.  The
subclass tells which stage failed:

- ``SchemaInputError``: a schema or include path cannot be read
- ``SchemaGrammarError``: schema text violates the IDL grammar
- ``SchemaResolutionError``: a type or import cannot be resolved
- ``SchemaOutputError``: generated source cannot be written
"""

from __future__ import annotations


class SchemaCompilationError(Exception):
    """Fatal error raised by the schema compiler driver."""

    def __init__(
        self,
        message: str,
        *,
        file: str | None = None,
        line: int | None = None,
        column: int | None = None,
        details: str | None = None,
    ) -> None:
        self.message = message
        self.file = file
        self.line = line
        self.column = column
        self.details = details
        super().__init__(self._format())

    @property
    def location(self) -> str | None:
        """``file[:line[:column]]`` when a file is known."""
        if self.file is None:
            return None
        loc = self.file
        if self.line is not None:
            loc += f":{self.line}"
            if self.column is not None:
                loc += f":{self.column}"
        return loc

    def _format(self) -> str:
        loc = self.location
        return f"{loc}: {self.message}" if loc else self.message


class SchemaInputError(SchemaCompilationError):
    """A schema path does not exist or cannot be read."""


class SchemaGrammarError(SchemaCompilationError):
    """Schema text violates the IDL grammar, or uses an unsupported construct."""


class SchemaResolutionError(SchemaCompilationError):
    """A referenced type or import cannot be resolved, or an import cycle exists."""


class SchemaOutputError(SchemaCompilationError):
    """Generated source cannot be written to its destination."""


class WireDecodeError(ValueError):
    """Protobuf wire bytes are malformed for the target message type."""

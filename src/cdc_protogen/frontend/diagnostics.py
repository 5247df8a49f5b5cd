"""Classify ``protoc`` diagnostics into the schema error taxonomy.

``protoc`` reports problems on stderr, one per line, in one of two shapes::

    pg_logicaldec.proto:41:5: "Datum" is not defined.
    missing.proto: File not found.

Lines containing ``warning:`` are advisory and never fail the build.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from cdc_protogen.errors import (
    SchemaCompilationError,
    SchemaGrammarError,
    SchemaInputError,
    SchemaResolutionError,
)

_LOCATED = re.compile(
    r"^(?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)$"
)
_FILE_ONLY = re.compile(r"^(?P<file>[^:]+?\.proto):\s*(?P<message>.+)$")

_RESOLUTION_MARKERS = (
    "is not defined",
    "was not found or had errors",
    "recursively imports",
    "is already defined",
    "seems to be defined in",
    "is resolved to",
    "is not a message type",
    "is not an enum type",
    "is not a type",
)
_INPUT_MARKERS = (
    "file not found",
    "no such file or directory",
    "does not reside within any path",
    "could not make proto path relative",
    "permission denied",
    "input is shadowed",
)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One parsed ``protoc`` stderr line."""

    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None

    @property
    def is_warning(self) -> bool:
        return self.message.lower().startswith("warning:")


def parse_diagnostics(stderr: str) -> list[Diagnostic]:
    """Parse ``protoc`` stderr into diagnostics, preserving order."""
    diagnostics: list[Diagnostic] = []
    for raw in stderr.splitlines():
        text = raw.strip()
        if not text:
            continue
        located = _LOCATED.match(text)
        if located:
            diagnostics.append(
                Diagnostic(
                    message=located.group("message"),
                    file=located.group("file"),
                    line=int(located.group("line")),
                    column=int(located.group("column")),
                )
            )
            continue
        file_only = _FILE_ONLY.match(text)
        if file_only:
            diagnostics.append(
                Diagnostic(
                    message=file_only.group("message"), file=file_only.group("file")
                )
            )
            continue
        diagnostics.append(Diagnostic(message=text))
    return diagnostics


def _is_input_file(file: str | None, input_files: Iterable[str]) -> bool:
    if file is None:
        return False
    return any(
        file == f or file.endswith(f"/{f}") or f.endswith(f"/{file}")
        for f in input_files
    )


def classify(
    diagnostic: Diagnostic,
    *,
    input_files: Iterable[str] = (),
    details: str | None = None,
) -> SchemaCompilationError:
    """Map a single diagnostic to the matching ``SchemaCompilationError``.

    A "file not found" for a file that was not passed as input comes from an
    ``import`` statement and is therefore a resolution failure.
    """
    lowered = diagnostic.message.lower()
    kwargs = {
        "file": diagnostic.file,
        "line": diagnostic.line,
        "column": diagnostic.column,
        "details": details,
    }
    if any(marker in lowered for marker in _INPUT_MARKERS):
        if "file not found" in lowered and not _is_input_file(
            diagnostic.file, list(input_files)
        ):
            msg = f"Import '{diagnostic.file}' not found in any include path"
            return SchemaResolutionError(msg, **kwargs)
        return SchemaInputError(diagnostic.message, **kwargs)
    if any(marker in lowered for marker in _RESOLUTION_MARKERS):
        return SchemaResolutionError(diagnostic.message, **kwargs)
    return SchemaGrammarError(diagnostic.message, **kwargs)


def first_error(
    stderr: str, *, input_files: Iterable[str] = ()
) -> SchemaCompilationError:
    """Return the error for the first non-warning diagnostic in *stderr*."""
    errors = [d for d in parse_diagnostics(stderr) if not d.is_warning]
    if not errors:
        msg = "Schema compiler failed without a diagnostic"
        return SchemaCompilationError(msg, details=stderr or None)
    return classify(errors[0], input_files=input_files, details=stderr)

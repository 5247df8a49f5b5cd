"""Run the external schema compiler and load its descriptor output.

Parsing, grammar validation and type resolution are delegated to ``protoc``
as bundled by ``grpcio-tools``.  It is asked for a ``FileDescriptorSet`` with
all transitive imports and source info (comments, locations), which the code
generator consumes.
"""

from __future__ import annotations

import subprocess
import sys
import tempfile
from collections.abc import Sequence
from pathlib import Path

import structlog
from google.protobuf import descriptor_pb2
from google.protobuf.message import DecodeError

from cdc_protogen.errors import SchemaCompilationError, SchemaInputError
from cdc_protogen.frontend.diagnostics import first_error, parse_diagnostics

logger = structlog.get_logger()

_DESCRIPTOR_SET_NAME = "descriptor_set.pb"


def _check_include_paths(include_paths: Sequence[Path]) -> list[Path]:
    resolved: list[Path] = []
    for inc in include_paths:
        if not inc.is_dir():
            msg = "Include path is not a directory"
            raise SchemaInputError(msg, file=str(inc))
        resolved.append(inc.resolve())
    return resolved


def _check_schema_paths(
    schema_paths: Sequence[Path], include_paths: Sequence[Path]
) -> list[Path]:
    """Validate schema files and return them resolved, de-duplicated and sorted."""
    resolved: set[Path] = set()
    for path in schema_paths:
        if not path.is_file():
            msg = "Schema file not found"
            raise SchemaInputError(msg, file=str(path))
        try:
            with path.open("rb") as f:
                f.read(1)
        except OSError as exc:
            msg = f"Schema file cannot be read: {exc.strerror or exc}"
            raise SchemaInputError(msg, file=str(path)) from exc
        full = path.resolve()
        if not any(full.is_relative_to(inc) for inc in include_paths):
            msg = "Schema file does not reside within any include path"
            raise SchemaInputError(msg, file=str(path))
        resolved.add(full)
    # protoc emits files in argument order; sorting keeps output independent
    # of the caller's ordering.
    return sorted(resolved, key=str)


def build_protoc_args(
    schema_paths: Sequence[Path],
    include_paths: Sequence[Path],
    descriptor_set_out: Path,
) -> list[str]:
    """Assemble the ``grpc_tools.protoc`` command line."""
    args = [sys.executable, "-m", "grpc_tools.protoc"]
    args.extend(f"--proto_path={inc}" for inc in include_paths)
    args.extend(
        [
            "--include_imports",
            "--include_source_info",
            f"--descriptor_set_out={descriptor_set_out}",
        ]
    )
    args.extend(str(p) for p in schema_paths)
    return args


def load_descriptor_set(
    schema_paths: Sequence[Path],
    include_paths: Sequence[Path],
) -> descriptor_pb2.FileDescriptorSet:
    """Parse and resolve *schema_paths* into a ``FileDescriptorSet``.

    Raises:
        SchemaInputError: a schema or include path cannot be used.
        SchemaGrammarError: ``protoc`` rejected the schema grammar.
        SchemaResolutionError: a type or import could not be resolved.
    """
    includes = _check_include_paths(include_paths)
    schemas = _check_schema_paths(schema_paths, includes)

    with tempfile.TemporaryDirectory(prefix="cdc-protogen-") as tmp:
        out = Path(tmp) / _DESCRIPTOR_SET_NAME
        args = build_protoc_args(schemas, includes, out)
        logger.info(
            "protoc.invoked",
            schemas=[str(p) for p in schemas],
            include_paths=[str(p) for p in includes],
        )
        try:
            proc = subprocess.run(  # noqa: S603
                args, capture_output=True, text=True, check=False
            )
        except OSError as exc:
            msg = f"Schema compiler could not be started: {exc}"
            raise SchemaCompilationError(msg) from exc

        if proc.returncode != 0:
            error = first_error(proc.stderr, input_files=[str(p) for p in schemas])
            logger.error(
                "protoc.failed",
                returncode=proc.returncode,
                location=error.location,
                error=error.message,
            )
            raise error

        for diag in parse_diagnostics(proc.stderr):
            logger.warning("protoc.warning", file=diag.file, message=diag.message)

        try:
            data = out.read_bytes()
            descriptor_set = descriptor_pb2.FileDescriptorSet.FromString(data)
        except (OSError, DecodeError) as exc:
            msg = f"Schema compiler produced no usable descriptor set: {exc}"
            raise SchemaCompilationError(msg) from exc

    logger.info("protoc.completed", files=len(descriptor_set.file))
    return descriptor_set

"""Schema compiler driver.

Runs the build step end to end: protoc front end → resolved schema →
generated sources → atomic write.  Every failure surfaces as a
``SchemaCompilationError`` and leaves the output location untouched.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

import structlog
from google.protobuf import descriptor_pb2

from cdc_protogen.codegen.generator import render_package
from cdc_protogen.codegen.schema import build_schema
from cdc_protogen.codegen.writer import write_package
from cdc_protogen.config.models import ALL_PATHS, CompilerConfig
from cdc_protogen.errors import SchemaCompilationError
from cdc_protogen.frontend.protoc import load_descriptor_set

logger = structlog.get_logger()

SCHEMAS_DIR = Path(__file__).parent / "schemas"
CHANGE_EVENT_SCHEMA = SCHEMAS_DIR / "pg_logicaldec.proto"


class CompilationState(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SchemaCompiler:
    """Compiles one configuration, once.

    ``state`` is ``pending`` until :meth:`run` finishes, then ``succeeded``
    or ``failed``.  There is no retry: build a new compiler to try again.
    """

    def __init__(self, config: CompilerConfig) -> None:
        self._config = config
        self._state = CompilationState.PENDING
        self._descriptor_set: descriptor_pb2.FileDescriptorSet | None = None

    @property
    def config(self) -> CompilerConfig:
        return self._config

    @property
    def state(self) -> CompilationState:
        return self._state

    def load(self) -> descriptor_pb2.FileDescriptorSet:
        """Parse and resolve the configured schemas (cached)."""
        if self._descriptor_set is None:
            self._descriptor_set = load_descriptor_set(
                self._config.schema_paths, self._config.include_paths
            )
        return self._descriptor_set

    def generate(self) -> dict[str, str]:
        """Return ``{relative_path: source}`` without writing anything."""
        schema = build_schema(self.load())
        return render_package(schema, self._config)

    def run(self) -> None:
        """Compile and write the generated package.

        Raises:
            RuntimeError: the compiler has already run.
            SchemaCompilationError: any stage failed; nothing was written.
        """
        if self._state != CompilationState.PENDING:
            msg = f"Schema compiler already ran (state={self._state})"
            raise RuntimeError(msg)

        logger.info(
            "compiler.started",
            schemas=[str(p) for p in self._config.schema_paths],
            output_dir=str(self._config.output_dir),
        )
        try:
            sources = self.generate()
            write_package(
                self._config.output_dir,
                sources,
                descriptor_set_path=self._config.descriptor_set_path,
                descriptor_set=self.load(),
            )
        except SchemaCompilationError as exc:
            self._state = CompilationState.FAILED
            logger.error(
                "compiler.failed",
                error_type=type(exc).__name__,
                location=exc.location,
                error=exc.message,
            )
            raise

        self._state = CompilationState.SUCCEEDED
        logger.info(
            "compiler.succeeded",
            output_dir=str(self._config.output_dir),
            modules=sorted(name for name in sources if name != "__init__.py"),
        )


def compile_protos(config: CompilerConfig) -> None:
    """Compile the configured schemas into a Python package at ``output_dir``."""
    SchemaCompiler(config).run()


def generate_sources(config: CompilerConfig) -> dict[str, str]:
    """Generate the package sources for *config* without writing them."""
    return SchemaCompiler(config).generate()


def change_event_config(output_dir: Path) -> CompilerConfig:
    """Configuration for the bundled change-event schema.

    Every map field is key-ordered and every type is serializable.
    """
    return CompilerConfig(
        schema_paths=[CHANGE_EVENT_SCHEMA],
        include_paths=[SCHEMAS_DIR],
        output_dir=output_dir,
        ordered_maps=[ALL_PATHS],
        serializable=[ALL_PATHS],
    )


def build_change_event_types(output_dir: Path) -> None:
    """Build step for the change-event types: compile ``pg_logicaldec.proto``."""
    compile_protos(change_event_config(output_dir))

"""Compile change-event protobuf schemas into ordered, serializable Python types."""

from cdc_protogen.compiler import (
    SchemaCompiler,
    build_change_event_types,
    compile_protos,
    generate_sources,
)
from cdc_protogen.config.models import CompilerConfig
from cdc_protogen.errors import (
    SchemaCompilationError,
    SchemaGrammarError,
    SchemaInputError,
    SchemaOutputError,
    SchemaResolutionError,
)

__version__ = "0.1.0"

__all__ = [
    "CompilerConfig",
    "SchemaCompilationError",
    "SchemaCompiler",
    "SchemaGrammarError",
    "SchemaInputError",
    "SchemaOutputError",
    "SchemaResolutionError",
    "build_change_event_types",
    "compile_protos",
    "generate_sources",
]

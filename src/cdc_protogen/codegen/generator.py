"""Render the resolved schema as Python source.

One module per protobuf package plus an ``__init__.py`` that imports every
module and rebuilds the models, so references across modules resolve
regardless of import order.  Output is a pure function of the schema and
the configuration: no timestamps, no absolute paths.

Generated modules reach runtime support through underscore-prefixed module
aliases (``_rt``, ``_typing``, ``_pydantic``) so schema type names can never
shadow them.
"""

from __future__ import annotations

import structlog

from cdc_protogen.codegen.schema import (
    EnumDef,
    FieldDef,
    MessageDef,
    ModuleDef,
    OneofDef,
    Schema,
)
from cdc_protogen.codegen.selectors import PathSelector
from cdc_protogen.config.models import CompilerConfig
from cdc_protogen.errors import SchemaResolutionError
from cdc_protogen.runtime.wire import Kind, Presence

logger = structlog.get_logger()

GENERATED_HEADER = "# Generated by cdc-protogen. Do not edit."
INIT_MODULE = "__init__.py"

_INDENT = "    "
_MODULE_ALIASES = frozenset({"_rt", "_typing", "_pydantic"})

_SCALAR_TYPES: dict[Kind, str] = {
    Kind.DOUBLE: "float",
    Kind.FLOAT: "float",
    Kind.INT32: "_rt.Int32",
    Kind.SINT32: "_rt.Int32",
    Kind.SFIXED32: "_rt.Int32",
    Kind.INT64: "_rt.Int64",
    Kind.SINT64: "_rt.Int64",
    Kind.SFIXED64: "_rt.Int64",
    Kind.UINT32: "_rt.UInt32",
    Kind.FIXED32: "_rt.UInt32",
    Kind.UINT64: "_rt.UInt64",
    Kind.FIXED64: "_rt.UInt64",
    Kind.BOOL: "bool",
    Kind.STRING: "str",
    Kind.BYTES: "bytes",
}

_ZERO_VALUES: dict[Kind, str] = {
    Kind.DOUBLE: "0.0",
    Kind.FLOAT: "0.0",
    Kind.BOOL: "False",
    Kind.STRING: '""',
    Kind.BYTES: 'b""',
}


def _docstring(text: str, indent: str) -> list[str]:
    body = text.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    if body.endswith('"'):
        body = body[:-1] + '\\"'
    lines = body.splitlines()
    if len(lines) == 1:
        return [f'{indent}"""{lines[0]}"""']
    out = [f'{indent}"""{lines[0]}']
    out.extend(f"{indent}{line}" if line else "" for line in lines[1:])
    out.append(f'{indent}"""')
    return out


def _comment(text: str, indent: str) -> list[str]:
    return [f"{indent}# {line}".rstrip() for line in text.splitlines()]


class _ModuleEmitter:
    """Renders one generated module."""

    def __init__(
        self,
        schema: Schema,
        module: ModuleDef,
        ordered_maps: PathSelector,
        serializable: PathSelector,
    ) -> None:
        self._schema = schema
        self._module = module
        self._ordered_maps = ordered_maps
        self._serializable = serializable
        self._exports: list[str] = []
        self._lines: list[str] = []
        self.map_fields = 0
        self.ordered_map_fields = 0

    # -- type expressions -----------------------------------------------------

    def _ref(self, full_name: str) -> str:
        return self._schema.reference(full_name, self._module.name)

    def _value_type(self, field: FieldDef) -> str:
        if field.kind in (Kind.MESSAGE, Kind.ENUM):
            assert field.type_name is not None
            return self._ref(field.type_name)
        return _SCALAR_TYPES[field.kind]

    def _annotation(self, field: FieldDef) -> str:
        if field.kind == Kind.MAP:
            assert field.map_key is not None and field.map_value is not None
            key = self._value_type(field.map_key)
            value = self._value_type(field.map_value)
            if self._ordered_maps.matches(field.path):
                return f"_rt.OrderedMap[{key}, {value}]"
            return f"dict[{key}, {value}]"
        item = self._value_type(field)
        if field.presence == Presence.REPEATED:
            return f"list[{item}]"
        if field.presence == Presence.EXPLICIT:
            return f"{item} | None"
        return item

    def _enum_default(self, type_name: str) -> tuple[str, bool]:
        """Default for an enum field; cross-module enums default by number."""
        enum = self._schema.enums[type_name]
        member = enum.default_member
        ref = self._schema.types[type_name]
        if ref.module == self._module.name:
            return f"{ref.py_name}.{member.attr}", False
        return str(member.number), True

    def _default(self, field: FieldDef) -> str:
        """Right-hand side of a field declaration."""
        kwargs: list[str] = []
        default: str | None = None
        validate = False

        if field.kind == Kind.MAP:
            kwargs.append("default_factory=dict")
            validate = self._ordered_maps.matches(field.path)
        elif field.presence == Presence.REPEATED:
            kwargs.append("default_factory=list")
        elif field.presence == Presence.EXPLICIT:
            default = "None"
        elif field.kind == Kind.ENUM:
            assert field.type_name is not None
            default, validate = self._enum_default(field.type_name)
        else:
            default = _ZERO_VALUES.get(field.kind, "0")

        if default is not None:
            kwargs.insert(0, f"default={default}")
        if field.attr != field.name:
            kwargs.append(f'alias="{field.name}"')
        if validate:
            kwargs.append("validate_default=True")

        if default is not None and len(kwargs) == 1:
            return default
        return f"_pydantic.Field({', '.join(kwargs)})"

    # -- wire table -----------------------------------------------------------

    def _spec(self, field: FieldDef) -> str:
        args = [
            f'name="{field.name}"',
            f"number={field.number}",
            f"kind=_rt.wire.Kind.{field.kind.name}",
        ]
        if field.presence != Presence.IMPLICIT:
            args.append(f"presence=_rt.wire.Presence.{field.presence.name}")
        # Oneof members are stored on the oneof attribute.
        target = field.oneof if field.oneof is not None else field.attr
        if target != field.name:
            args.append(f'attr="{target}"')
        if field.packed:
            args.append("packed=True")
        if field.oneof is not None:
            args.append(f'oneof="{field.oneof}"')
            args.append(f"variant=lambda: {field.variant_name}")
        if field.kind == Kind.MESSAGE:
            args.append(f"message_type=lambda: {self._value_type(field)}")
        elif field.kind == Kind.ENUM:
            args.append(f"enum_type=lambda: {self._value_type(field)}")
        elif field.kind == Kind.MAP:
            assert field.map_key is not None and field.map_value is not None
            args.append(f"map_key={self._spec(field.map_key)}")
            args.append(f"map_value={self._spec(field.map_value)}")
        return f"_rt.wire.FieldSpec({', '.join(args)})"

    # -- definitions ----------------------------------------------------------

    def _bases(self, full_name: str, base: str) -> str:
        if self._serializable.matches(full_name):
            return f"_rt.Serializable, {base}"
        return base

    def _emit_enum(self, enum: EnumDef) -> None:
        out = self._lines
        out.append("")
        out.append("")
        out.append(f"class {enum.py_name}({self._bases(enum.full_name, '_rt.ProtoEnum')}):")
        if enum.doc:
            out.extend(_docstring(enum.doc, _INDENT))
            out.append("")
        for value in enum.values:
            if value.doc:
                out.extend(_comment(value.doc, _INDENT))
            out.append(f"{_INDENT}{value.attr} = {value.number}")
        self._exports.append(enum.py_name)

    def _emit_oneof(self, message: MessageDef, oneof: OneofDef) -> None:
        out = self._lines
        for field in oneof.fields:
            assert field.variant_name is not None
            out.append("")
            out.append("")
            bases = self._bases(message.full_name, "_rt.OneofVariant")
            out.append(f"class {field.variant_name}({bases}):")
            if field.doc:
                out.extend(_docstring(field.doc, _INDENT))
                out.append("")
            out.append(
                f'{_INDENT}case: _typing.Literal["{field.name}"] = "{field.name}"'
            )
            out.append(f"{_INDENT}value: {self._value_type(field)}")
            self._exports.append(field.variant_name)

        if len(oneof.fields) > 1:
            variants = ", ".join(f.variant_name or "" for f in oneof.fields)
            out.append("")
            out.append("")
            out.append(f"{oneof.alias_name} = _typing.Annotated[")
            out.append(f"{_INDENT}_typing.Union[{variants}],")
            out.append(f'{_INDENT}_pydantic.Field(discriminator="case"),')
            out.append("]")
            self._exports.append(oneof.alias_name)

    def _oneof_type(self, oneof: OneofDef) -> str:
        if len(oneof.fields) == 1:
            return oneof.fields[0].variant_name or ""
        return oneof.alias_name

    def _emit_message(self, message: MessageDef) -> None:
        for oneof in message.oneofs:
            self._emit_oneof(message, oneof)

        out = self._lines
        out.append("")
        out.append("")
        out.append(f"class {message.py_name}({self._bases(message.full_name, '_rt.Message')}):")
        if message.doc:
            out.extend(_docstring(message.doc, _INDENT))
            out.append("")
        out.append(f'{_INDENT}__proto_name__ = "{message.full_name}"')

        if message.members:
            out.append("")
        for member in message.members:
            if isinstance(member, OneofDef):
                if member.doc:
                    out.extend(_comment(member.doc, _INDENT))
                default = "None"
                if member.attr != member.name:
                    default = f'_pydantic.Field(default=None, alias="{member.name}")'
                out.append(
                    f"{_INDENT}{member.attr}: {self._oneof_type(member)} | None = {default}"
                )
                continue
            if member.doc:
                out.extend(_comment(member.doc, _INDENT))
            if member.kind == Kind.MAP:
                self.map_fields += 1
                if self._ordered_maps.matches(member.path):
                    self.ordered_map_fields += 1
            out.append(
                f"{_INDENT}{member.attr}: {self._annotation(member)} = {self._default(member)}"
            )

        out.append("")
        out.append(f"{_INDENT}__wire__ = (")
        for field in message.wire_fields:
            out.append(f"{_INDENT * 2}{self._spec(field)},")
        out.append(f"{_INDENT})")
        self._exports.append(message.py_name)

    # -- module ---------------------------------------------------------------

    def _check_names(self) -> None:
        reserved = _MODULE_ALIASES | self._module.imports
        if any(message.oneofs for message in self._module.messages):
            # Variant bodies bind ``case`` before annotating ``value``.
            reserved = reserved | {"case"}
        for enum in self._module.enums:
            names = [enum.py_name]
            self._check_name(names, reserved, enum.full_name)
        for message in self._module.messages:
            names = [message.py_name]
            for oneof in message.oneofs:
                names.append(oneof.alias_name)
                names.extend(f.variant_name or "" for f in oneof.fields)
            self._check_name(names, reserved, message.full_name)

    def _check_name(self, names: list[str], reserved: frozenset[str] | set[str], owner: str) -> None:
        for name in names:
            if name in reserved:
                msg = (
                    f"Generated name '{name}' for '{owner}' shadows a reserved name in "
                    f"module '{self._module.name}'"
                )
                raise SchemaResolutionError(msg, file=self._module.files[0])

    def render(self) -> str:
        self._check_names()
        for enum in self._module.enums:
            self._emit_enum(enum)
        for message in self._module.messages:
            self._emit_message(message)

        head = [GENERATED_HEADER]
        head.extend(f"# source: {name}" for name in sorted(self._module.files))
        package = self._module.package or "(no package)"
        head.append(f'"""Types for protobuf package ``{package}``."""')
        head.append("")
        head.append("from __future__ import annotations")
        head.append("")
        head.append("import typing as _typing")
        head.append("")
        head.append("import pydantic as _pydantic")
        head.append("")
        head.append("from cdc_protogen import runtime as _rt")
        if self._module.imports:
            head.append("")
            head.append(f"from . import {', '.join(sorted(self._module.imports))}")
        head.append("")
        head.append("__all__ = [")
        head.extend(f'{_INDENT}"{name}",' for name in sorted(self._exports))
        head.append("]")

        return "\n".join(head + self._lines) + "\n"


def _render_init(modules: list[str]) -> str:
    lines = [
        GENERATED_HEADER,
        '"""Generated protobuf types."""',
        "",
        "from cdc_protogen.runtime import rebuild_models",
        "",
    ]
    if modules:
        lines.append(f"from . import {', '.join(modules)}")
        lines.append("")
        lines.append(f"__all__ = [{', '.join(repr(m) for m in modules)}]")
        lines.append("")
        lines.append(f"rebuild_models({', '.join(modules)})")
    return "\n".join(lines) + "\n"


def render_package(schema: Schema, config: CompilerConfig) -> dict[str, str]:
    """Render *schema* into ``{relative_path: source}`` for the output package."""
    ordered_maps = PathSelector(config.ordered_maps)
    serializable = PathSelector(config.serializable)

    sources: dict[str, str] = {}
    for name, module in schema.modules.items():
        emitter = _ModuleEmitter(schema, module, ordered_maps, serializable)
        sources[f"{name}.py"] = emitter.render()
        logger.debug(
            "codegen.module_rendered",
            module=name,
            messages=len(module.messages),
            enums=len(module.enums),
            map_fields=emitter.map_fields,
            ordered_map_fields=emitter.ordered_map_fields,
        )
    sources[INIT_MODULE] = _render_init(list(schema.modules))
    return sources

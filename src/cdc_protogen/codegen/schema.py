"""Resolved schema model built from a ``FileDescriptorSet``.

Two passes over the descriptor set: the first registers every message and
enum in a global type table (and checks that the Python names derived for
them do not collide), the second builds the per-module definitions with all
type references resolved against that table.  Files are visited sorted by
``(package, name)`` so the result does not depend on input order.
"""

from __future__ import annotations

import keyword
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog
from google.protobuf import descriptor_pb2

from cdc_protogen.errors import SchemaGrammarError, SchemaResolutionError
from cdc_protogen.runtime.wire import PACKABLE_KINDS, Kind, Presence

logger = structlog.get_logger()

_FDP = descriptor_pb2.FieldDescriptorProto

_KINDS: dict[int, Kind] = {
    _FDP.TYPE_DOUBLE: Kind.DOUBLE,
    _FDP.TYPE_FLOAT: Kind.FLOAT,
    _FDP.TYPE_INT64: Kind.INT64,
    _FDP.TYPE_UINT64: Kind.UINT64,
    _FDP.TYPE_INT32: Kind.INT32,
    _FDP.TYPE_FIXED64: Kind.FIXED64,
    _FDP.TYPE_FIXED32: Kind.FIXED32,
    _FDP.TYPE_BOOL: Kind.BOOL,
    _FDP.TYPE_STRING: Kind.STRING,
    _FDP.TYPE_MESSAGE: Kind.MESSAGE,
    _FDP.TYPE_BYTES: Kind.BYTES,
    _FDP.TYPE_UINT32: Kind.UINT32,
    _FDP.TYPE_ENUM: Kind.ENUM,
    _FDP.TYPE_SFIXED32: Kind.SFIXED32,
    _FDP.TYPE_SFIXED64: Kind.SFIXED64,
    _FDP.TYPE_SINT32: Kind.SINT32,
    _FDP.TYPE_SINT64: Kind.SINT64,
}

# Source-info path components (descriptor.proto field numbers).
_FILE_MESSAGE = 4
_FILE_ENUM = 5
_MESSAGE_FIELD = 2
_MESSAGE_NESTED = 3
_MESSAGE_ENUM = 4
_MESSAGE_ONEOF = 8
_ENUM_VALUE = 2

# Attribute names generated models cannot use as fields.
_RESERVED_ATTRS = frozenset(
    {
        "encode",
        "decode",
        "to_json",
        "from_json",
        "to_dict",
        "from_dict",
        "copy",
        "dict",
        "json",
        "schema",
        "schema_json",
        "construct",
        "validate",
        "fields",
        "parse_obj",
        "parse_raw",
        "parse_file",
        "from_orm",
        "update_forward_refs",
    }
)
_RESERVED_ENUM_MEMBERS = frozenset(
    {"name", "value", "coerce", "to_json", "from_json", "to_dict", "from_dict", "mro"}
)


def module_name(package: str) -> str:
    """Python module name for a protobuf package (``google.protobuf`` → ``google_protobuf``)."""
    if not package:
        return "_root"
    name = package.replace(".", "_")
    return name + "_" if keyword.iskeyword(name) else name


def camel(name: str) -> str:
    """``datum_int32`` → ``DatumInt32``."""
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


def py_attr(name: str) -> str:
    """Python attribute for a schema field or oneof name."""
    if name.startswith("_"):
        name = name.lstrip("_") or "field"
        return name + "_"
    if keyword.iskeyword(name) or name in _RESERVED_ATTRS or name.startswith("model_"):
        return name + "_"
    return name


def py_enum_member(name: str) -> str:
    if name.startswith("_"):
        name = name.lstrip("_") or "member"
        return name + "_"
    if keyword.iskeyword(name) or name in _RESERVED_ENUM_MEMBERS:
        return name + "_"
    return name


@dataclass
class EnumValueDef:
    name: str
    attr: str
    number: int
    doc: str | None = None


@dataclass
class EnumDef:
    full_name: str
    py_name: str
    values: list[EnumValueDef]
    doc: str | None = None

    @property
    def default_member(self) -> EnumValueDef:
        """The first declared value (always the zero value in proto3)."""
        return self.values[0]


@dataclass
class FieldDef:
    name: str
    attr: str
    number: int
    kind: Kind
    presence: Presence
    path: str
    type_name: str | None = None
    packed: bool = False
    oneof: str | None = None
    variant_name: str | None = None
    map_key: FieldDef | None = None
    map_value: FieldDef | None = None
    doc: str | None = None


@dataclass
class OneofDef:
    name: str
    attr: str
    alias_name: str
    path: str
    fields: list[FieldDef] = field(default_factory=list)
    doc: str | None = None


@dataclass
class MessageDef:
    full_name: str
    py_name: str
    members: list[FieldDef | OneofDef] = field(default_factory=list)
    doc: str | None = None

    @property
    def wire_fields(self) -> list[FieldDef]:
        """Every schema field, oneof members included, sorted by number."""
        fields: list[FieldDef] = []
        for member in self.members:
            if isinstance(member, OneofDef):
                fields.extend(member.fields)
            else:
                fields.append(member)
        return sorted(fields, key=lambda f: f.number)

    @property
    def map_fields(self) -> list[FieldDef]:
        return [
            m for m in self.members if isinstance(m, FieldDef) and m.kind == Kind.MAP
        ]

    @property
    def oneofs(self) -> list[OneofDef]:
        return [m for m in self.members if isinstance(m, OneofDef)]


@dataclass
class ModuleDef:
    name: str
    package: str
    files: list[str] = field(default_factory=list)
    enums: list[EnumDef] = field(default_factory=list)
    messages: list[MessageDef] = field(default_factory=list)
    imports: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class TypeRef:
    full_name: str
    module: str
    py_name: str
    is_enum: bool


@dataclass
class Schema:
    """All generated modules plus the global type table."""

    modules: dict[str, ModuleDef]
    types: dict[str, TypeRef]
    enums: dict[str, EnumDef]

    def reference(self, full_name: str, from_module: str) -> str:
        """Python expression naming *full_name* from inside *from_module*."""
        ref = self.types[full_name]
        if ref.module == from_module:
            return ref.py_name
        return f"{ref.module}.{ref.py_name}"


def _clean_comment(text: str) -> str | None:
    lines = [line.strip() for line in text.strip("\n").splitlines()]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines) or None


class _SchemaBuilder:
    def __init__(self) -> None:
        self._types: dict[str, TypeRef] = {}
        self._map_entries: dict[str, descriptor_pb2.DescriptorProto] = {}
        self._names: dict[str, dict[str, str]] = {}
        self._modules: dict[str, ModuleDef] = {}
        self._enums: dict[str, EnumDef] = {}
        self._docs: dict[tuple[int, ...], str] = {}
        self._lines: dict[tuple[int, ...], int] = {}
        self._file: descriptor_pb2.FileDescriptorProto | None = None

    # -- pass 1: type table ---------------------------------------------------

    def register(self, file: descriptor_pb2.FileDescriptorProto) -> None:
        module = module_name(file.package)
        mod = self._modules.get(module)
        if mod is None:
            mod = self._modules[module] = ModuleDef(name=module, package=file.package)
        elif mod.package != file.package:
            msg = (
                f"Packages '{mod.package}' and '{file.package}' both map to "
                f"Python module '{module}'"
            )
            raise SchemaResolutionError(msg, file=file.name)
        mod.files.append(file.name)

        prefix = f".{file.package}" if file.package else ""
        for enum in file.enum_type:
            self._register_type(file, module, f"{prefix}.{enum.name}", [enum.name], True)
        for msg_proto in file.message_type:
            self._register_message(file, module, prefix, [], msg_proto)

    def _register_message(
        self,
        file: descriptor_pb2.FileDescriptorProto,
        module: str,
        prefix: str,
        parents: list[str],
        proto: descriptor_pb2.DescriptorProto,
    ) -> None:
        names = [*parents, proto.name]
        full_name = f"{prefix}.{'.'.join(names)}"
        if proto.options.map_entry:
            self._map_entries[full_name] = proto
            return
        self._register_type(file, module, full_name, names, False)
        for enum in proto.enum_type:
            self._register_type(
                file, module, f"{full_name}.{enum.name}", [*names, enum.name], True
            )
        for nested in proto.nested_type:
            self._register_message(file, module, prefix, names, nested)

    def _register_type(
        self,
        file: descriptor_pb2.FileDescriptorProto,
        module: str,
        full_name: str,
        names: Sequence[str],
        is_enum: bool,
    ) -> None:
        py_name = "_".join(names)
        self._claim_name(file, module, py_name, full_name)
        self._types[full_name] = TypeRef(
            full_name=full_name, module=module, py_name=py_name, is_enum=is_enum
        )

    def _claim_name(
        self,
        file: descriptor_pb2.FileDescriptorProto,
        module: str,
        py_name: str,
        owner: str,
    ) -> None:
        taken = self._names.setdefault(module, {})
        if py_name in taken:
            msg = (
                f"Generated name '{py_name}' for '{owner}' collides with "
                f"'{taken[py_name]}'"
            )
            raise SchemaResolutionError(msg, file=file.name)
        taken[py_name] = owner

    # -- pass 2: definitions --------------------------------------------------

    def build(self, file: descriptor_pb2.FileDescriptorProto) -> None:
        self._file = file
        self._docs = {}
        self._lines = {}
        for loc in file.source_code_info.location:
            path = tuple(loc.path)
            if loc.leading_comments:
                self._docs[path] = loc.leading_comments
            if loc.span:
                self._lines[path] = loc.span[0] + 1

        module = self._modules[module_name(file.package)]
        prefix = f".{file.package}" if file.package else ""
        for i, enum in enumerate(file.enum_type):
            self._build_enum(module, f"{prefix}.{enum.name}", enum, (_FILE_ENUM, i))
        for i, proto in enumerate(file.message_type):
            self._build_message(
                module, f"{prefix}.{proto.name}", proto, (_FILE_MESSAGE, i)
            )
        if file.extension:
            logger.debug("codegen.extensions_skipped", file=file.name)

    def _doc(self, path: tuple[int, ...]) -> str | None:
        text = self._docs.get(path)
        return _clean_comment(text) if text else None

    def _build_enum(
        self,
        module: ModuleDef,
        full_name: str,
        proto: descriptor_pb2.EnumDescriptorProto,
        path: tuple[int, ...],
    ) -> None:
        values = [
            EnumValueDef(
                name=v.name,
                attr=py_enum_member(v.name),
                number=v.number,
                doc=self._doc((*path, _ENUM_VALUE, i)),
            )
            for i, v in enumerate(proto.value)
        ]
        enum = EnumDef(
            full_name=full_name,
            py_name=self._types[full_name].py_name,
            values=values,
            doc=self._doc(path),
        )
        module.enums.append(enum)
        self._enums[full_name] = enum

    def _build_message(
        self,
        module: ModuleDef,
        full_name: str,
        proto: descriptor_pb2.DescriptorProto,
        path: tuple[int, ...],
    ) -> None:
        if proto.options.map_entry:
            return
        assert self._file is not None
        py_name = self._types[full_name].py_name
        message = MessageDef(full_name=full_name, py_name=py_name, doc=self._doc(path))

        synthetic = {
            i
            for i in range(len(proto.oneof_decl))
            if all(f.proto3_optional for f in proto.field if f.HasField("oneof_index") and f.oneof_index == i)
        }
        oneofs: dict[int, OneofDef] = {}
        attrs: set[str] = set()

        for i, fproto in enumerate(proto.field):
            in_oneof = fproto.HasField("oneof_index") and fproto.oneof_index not in synthetic
            field_def = self._build_field(
                module, full_name, fproto, (*path, _MESSAGE_FIELD, i), in_oneof
            )
            if in_oneof:
                idx = fproto.oneof_index
                oneof = oneofs.get(idx)
                if oneof is None:
                    name = proto.oneof_decl[idx].name
                    oneof = OneofDef(
                        name=name,
                        attr=py_attr(name),
                        alias_name=f"{py_name}_{camel(name)}",
                        path=f"{full_name}.{name}",
                        doc=self._doc((*path, _MESSAGE_ONEOF, idx)),
                    )
                    self._claim_name(
                        self._file, module.name, oneof.alias_name, oneof.path
                    )
                    self._claim_attr(attrs, oneof.attr, oneof.path)
                    oneofs[idx] = oneof
                    message.members.append(oneof)
                field_def.oneof = oneof.attr
                field_def.variant_name = f"{oneof.alias_name}_{camel(field_def.name)}"
                self._claim_name(
                    self._file, module.name, field_def.variant_name, field_def.path
                )
                oneof.fields.append(field_def)
            else:
                self._claim_attr(attrs, field_def.attr, field_def.path)
                message.members.append(field_def)

        module.messages.append(message)

        for i, enum in enumerate(proto.enum_type):
            self._build_enum(
                module, f"{full_name}.{enum.name}", enum, (*path, _MESSAGE_ENUM, i)
            )
        for i, nested in enumerate(proto.nested_type):
            self._build_message(
                module,
                f"{full_name}.{nested.name}",
                nested,
                (*path, _MESSAGE_NESTED, i),
            )

    def _claim_attr(self, attrs: set[str], attr: str, owner: str) -> None:
        if attr in attrs:
            msg = f"Generated attribute '{attr}' for '{owner}' collides with another field"
            raise SchemaResolutionError(msg, file=self._file.name if self._file else None)
        attrs.add(attr)

    def _build_field(
        self,
        module: ModuleDef,
        owner: str,
        proto: descriptor_pb2.FieldDescriptorProto,
        path: tuple[int, ...],
        in_oneof: bool,
    ) -> FieldDef:
        assert self._file is not None
        field_path = f"{owner}.{proto.name}"
        if proto.type == _FDP.TYPE_GROUP:
            msg = f"Group field '{field_path}' is not supported; use a nested message"
            raise SchemaGrammarError(msg, file=self._file.name, line=self._lines.get(path))

        kind = _KINDS[proto.type]
        type_name: str | None = None
        map_key = map_value = None

        if kind in (Kind.MESSAGE, Kind.ENUM):
            type_name = proto.type_name
            if type_name in self._map_entries:
                kind = Kind.MAP
                entry = self._map_entries[type_name]
                map_key = self._build_map_part(module, field_path, entry.field[0])
                map_value = self._build_map_part(module, field_path, entry.field[1])
                type_name = None
            else:
                self._resolve(module, type_name, field_path, path)

        presence = self._presence(proto, kind, in_oneof)
        packed = False
        if presence == Presence.REPEATED and kind in PACKABLE_KINDS:
            if proto.options.HasField("packed"):
                packed = proto.options.packed
            else:
                packed = self._file.syntax == "proto3"

        return FieldDef(
            name=proto.name,
            attr=py_attr(proto.name),
            number=proto.number,
            kind=kind,
            presence=presence,
            path=field_path,
            type_name=type_name,
            packed=packed,
            map_key=map_key,
            map_value=map_value,
            doc=self._doc(path),
        )

    def _build_map_part(
        self,
        module: ModuleDef,
        field_path: str,
        proto: descriptor_pb2.FieldDescriptorProto,
    ) -> FieldDef:
        kind = _KINDS[proto.type]
        type_name = proto.type_name if kind in (Kind.MESSAGE, Kind.ENUM) else None
        if type_name is not None:
            self._resolve(module, type_name, field_path, None)
        return FieldDef(
            name=proto.name,
            attr=proto.name,
            number=proto.number,
            kind=kind,
            presence=Presence.REQUIRED,
            path=f"{field_path}.{proto.name}",
            type_name=type_name,
        )

    def _resolve(
        self,
        module: ModuleDef,
        type_name: str,
        field_path: str,
        path: tuple[int, ...] | None,
    ) -> None:
        ref = self._types.get(type_name)
        if ref is None:
            msg = f"Type '{type_name}' referenced by '{field_path}' is not defined"
            raise SchemaResolutionError(
                msg,
                file=self._file.name if self._file else None,
                line=self._lines.get(path) if path else None,
            )
        if ref.module != module.name:
            module.imports.add(ref.module)

    def _presence(
        self,
        proto: descriptor_pb2.FieldDescriptorProto,
        kind: Kind,
        in_oneof: bool,
    ) -> Presence:
        assert self._file is not None
        if proto.label == _FDP.LABEL_REPEATED:
            return Presence.REPEATED
        if proto.label == _FDP.LABEL_REQUIRED and kind != Kind.MESSAGE:
            return Presence.REQUIRED
        if (
            in_oneof
            or proto.proto3_optional
            or kind == Kind.MESSAGE
            or self._file.syntax != "proto3"
        ):
            return Presence.EXPLICIT
        return Presence.IMPLICIT

    def unshadow_attrs(self) -> None:
        """Rename fields whose attribute would hide a type their module refers to.

        A class body binding ``Inner`` (or ``common_v1``) to a field default
        makes annotations naming that type unresolvable, so such attributes
        get trailing underscores and keep the schema name as their alias.
        """
        for module in self._modules.values():
            visible = set(self._names.get(module.name, {})) | module.imports
            for message in module.messages:
                attrs = {member.attr for member in message.members}
                for member in message.members:
                    if member.attr not in visible:
                        continue
                    attr = member.attr + "_"
                    while attr in visible or attr in attrs:
                        attr += "_"
                    attrs.add(attr)
                    member.attr = attr
                    if isinstance(member, OneofDef):
                        for field_def in member.fields:
                            field_def.oneof = attr

    def schema(self) -> Schema:
        modules = {name: self._modules[name] for name in sorted(self._modules)}
        return Schema(modules=modules, types=self._types, enums=self._enums)


def build_schema(descriptor_set: descriptor_pb2.FileDescriptorSet) -> Schema:
    """Build the resolved schema model for every file in *descriptor_set*."""
    files = sorted(descriptor_set.file, key=lambda f: (f.package, f.name))
    builder = _SchemaBuilder()
    for file in files:
        builder.register(file)
    for file in files:
        builder.build(file)
    builder.unshadow_attrs()
    schema = builder.schema()
    logger.info(
        "codegen.schema_resolved",
        modules=list(schema.modules),
        types=len(schema.types),
    )
    return schema

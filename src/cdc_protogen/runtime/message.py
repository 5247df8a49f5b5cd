"""Base classes for generated protobuf messages."""

from __future__ import annotations

from types import ModuleType
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict

from cdc_protogen.runtime import wire

_MODEL_CONFIG = ConfigDict(
    extra="forbid",
    populate_by_name=True,
    ser_json_bytes="base64",
    val_json_bytes="base64",
    ser_json_inf_nan="constants",
)


class Message(BaseModel):
    """A generated protobuf message.

    Field tags are not part of the model; they live in ``__wire__``.
    """

    model_config = ConfigDict(validate_assignment=True, **_MODEL_CONFIG)

    __proto_name__: ClassVar[str] = ""
    __wire__: ClassVar[tuple[wire.FieldSpec, ...]] = ()

    def encode(self) -> bytes:
        """Serialize to protobuf wire bytes."""
        return wire.encode_message(self)

    @classmethod
    def decode(cls, data: bytes) -> Self:
        """Parse protobuf wire bytes."""
        return wire.decode_message(cls, data)


class OneofVariant(BaseModel):
    """One member of a oneof: a ``case`` tag plus its ``value``."""

    model_config = ConfigDict(frozen=True, **_MODEL_CONFIG)

    case: str
    value: Any


def rebuild_models(*modules: ModuleType) -> None:
    """Resolve forward references of every model defined in *modules*.

    Called once by the generated package after all of its modules are
    imported, so references across modules resolve regardless of import order.
    """
    for module in modules:
        namespace = vars(module)
        for obj in list(namespace.values()):
            if (
                isinstance(obj, type)
                and issubclass(obj, BaseModel)
                and obj.__module__ == module.__name__
            ):
                obj.model_rebuild(force=True, _types_namespace=namespace)

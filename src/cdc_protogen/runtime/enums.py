"""Base class for generated protobuf enums."""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Self

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

from cdc_protogen.runtime.serde import Serializable


class ProtoEnum(IntEnum):
    """A closed protobuf enum.

    Accepts a member, its number or its name on validation.  Enums that also
    derive ``Serializable`` are written to JSON by name; others by number.
    """

    @classmethod
    def coerce(cls, value: Any) -> Self:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value]
            except KeyError:
                msg = f"'{value}' is not a valid {cls.__name__} name"
                raise ValueError(msg) from None
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        msg = f"{value!r} is not a valid {cls.__name__}"
        raise ValueError(msg)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        if issubclass(cls, Serializable):
            serializer = core_schema.plain_serializer_function_ser_schema(
                lambda member: member.name, when_used="json"
            )
        else:
            serializer = core_schema.plain_serializer_function_ser_schema(
                int, when_used="json"
            )
        return core_schema.no_info_plain_validator_function(
            cls.coerce, serialization=serializer
        )

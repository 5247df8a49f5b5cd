"""Secondary (JSON) serialization capability for generated types."""

from __future__ import annotations

import json
from functools import cache
from typing import Any, Self

from pydantic import TypeAdapter


@cache
def _adapter(cls: type) -> TypeAdapter[Any]:
    return TypeAdapter(cls)


class Serializable:
    """Structured, self-describing form in addition to the protobuf wire form.

    Mixed into generated messages, oneof variants and enums.  Field names
    are the schema names, bytes are base64, enums are written by name.
    """

    def to_json(self, *, indent: int | None = None) -> str:
        return _adapter(type(self)).dump_json(self, by_alias=True, indent=indent).decode()

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        return _adapter(cls).validate_json(data)  # type: ignore[no-any-return]

    def to_dict(self) -> Any:
        """JSON-compatible Python form (dicts, lists, str, int, float, bool, None)."""
        return _adapter(type(self)).dump_python(self, mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: Any) -> Self:
        """Inverse of :meth:`to_dict`.

        Validated as JSON so base64 bytes and enum names decode the same way
        they do in :meth:`from_json`.
        """
        return cls.from_json(json.dumps(data))

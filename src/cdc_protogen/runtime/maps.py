"""Key-ordered map fields.

``OrderedMap[K, V]`` is what generated code uses for a ``map<K, V>`` field.
Values are stored in a ``SortedDict`` so iteration, wire encoding and JSON
output all follow key order, whatever order entries were inserted in.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import AfterValidator, SerializerFunctionWrapHandler, WrapSerializer
from sortedcontainers import SortedDict


def _to_sorted(value: Mapping[Any, Any]) -> SortedDict:
    if isinstance(value, SortedDict):
        return value
    return SortedDict(value)


def _in_key_order(value: Mapping[Any, Any], handler: SerializerFunctionWrapHandler) -> Any:
    # SortedDict subclasses dict; the serializer would otherwise walk the
    # underlying insertion order.
    return handler(dict(value.items()))


class OrderedMap:
    """Annotation factory: ``OrderedMap[str, int]``."""

    def __class_getitem__(cls, params: tuple[Any, Any]) -> Any:
        key_type, value_type = params
        return Annotated[
            dict[key_type, value_type],  # type: ignore[valid-type]
            AfterValidator(_to_sorted),
            WrapSerializer(_in_key_order),
        ]

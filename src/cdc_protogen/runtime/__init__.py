"""Runtime support imported by generated change-event types."""

from cdc_protogen.runtime import wire
from cdc_protogen.runtime.enums import ProtoEnum
from cdc_protogen.runtime.maps import OrderedMap
from cdc_protogen.runtime.message import Message, OneofVariant, rebuild_models
from cdc_protogen.runtime.serde import Serializable
from cdc_protogen.runtime.types import Int32, Int64, UInt32, UInt64

__all__ = [
    "Int32",
    "Int64",
    "Message",
    "OneofVariant",
    "OrderedMap",
    "ProtoEnum",
    "Serializable",
    "UInt32",
    "UInt64",
    "rebuild_models",
    "wire",
]

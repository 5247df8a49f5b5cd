"""Pydantic configuration models for the schema compiler."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Self

from pydantic import BaseModel, Field, field_validator, model_validator

# "." | ".pkg.Msg.field" | "Msg.field" | "field"
_SELECTOR_PATTERN = re.compile(r"^(\.|\.?[A-Za-z_]\w*(\.[A-Za-z_]\w*)*)$")

ProtoPath = Annotated[str, Field(min_length=1)]

ALL_PATHS = "."


class CompilerConfig(BaseModel, extra="forbid"):
    """Configuration for one schema compilation.

    Passed explicitly into the compiler; nothing is read from ambient
    process state once this value has been built.

    Selectors (``ordered_maps``, ``serializable``) use protobuf path syntax:

    - ``"."``                 every map field / every type
    - ``".pkg.Msg"``          a fully qualified prefix (component boundaries)
    - ``"Msg.field"``         a suffix match (component boundaries)
    """

    schema_paths: list[Path] = Field(min_length=1)
    include_paths: list[Path] = Field(default_factory=list)
    output_dir: Path
    ordered_maps: list[ProtoPath] = Field(default_factory=lambda: [ALL_PATHS])
    serializable: list[ProtoPath] = Field(default_factory=lambda: [ALL_PATHS])
    descriptor_set_path: Path | None = None

    @field_validator("ordered_maps", "serializable")
    @classmethod
    def validate_selectors(cls, v: list[str]) -> list[str]:
        """Reject selectors that are not protobuf paths."""
        for selector in v:
            if not _SELECTOR_PATTERN.match(selector):
                msg = (
                    f"Selector '{selector}' must be '.', a fully qualified "
                    f"path (e.g. '.decoderbufs.RowMessage') or a suffix "
                    f"(e.g. 'RowMessage.new_tuple')"
                )
                raise ValueError(msg)
        return v

    @field_validator("schema_paths")
    @classmethod
    def validate_schema_suffix(cls, v: list[Path]) -> list[Path]:
        for path in v:
            if path.suffix != ".proto":
                msg = f"Schema path '{path}' must name a .proto file"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_output_separate_from_inputs(self) -> Self:
        """The output package must not overlap an include directory."""
        out = self.output_dir.resolve()
        for inc in self.include_paths:
            if out == inc.resolve():
                msg = f"output_dir '{self.output_dir}' must not be an include path"
                raise ValueError(msg)
        return self

    @property
    def orders_all_maps(self) -> bool:
        return ALL_PATHS in self.ordered_maps

    @property
    def serializes_all_types(self) -> bool:
        return ALL_PATHS in self.serializable

"""End-to-end tests: compile schemas with protoc and import the generated package."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from google.protobuf import descriptor_pb2
from sortedcontainers import SortedDict

from cdc_protogen import (
    SchemaCompiler,
    SchemaGrammarError,
    SchemaInputError,
    SchemaOutputError,
    SchemaResolutionError,
    compile_protos,
    generate_sources,
)
from cdc_protogen.compiler import CompilationState
from cdc_protogen.config.models import CompilerConfig
from cdc_protogen.runtime import Message, OneofVariant, ProtoEnum, Serializable

pytestmark = pytest.mark.integration


def _inventory_config(protos_dir: Path, output_dir: Path, **overrides) -> CompilerConfig:
    data = {
        "schema_paths": [
            protos_dir / "inventory" / "v1" / "inventory.proto",
            protos_dir / "common" / "v1" / "money.proto",
        ],
        "include_paths": [protos_dir],
        "output_dir": output_dir,
    }
    data.update(overrides)
    return CompilerConfig(**data)


def _broken_config(broken_dir: Path, name: str, output_dir: Path) -> CompilerConfig:
    return CompilerConfig(
        schema_paths=[broken_dir / name],
        include_paths=[broken_dir],
        output_dir=output_dir,
    )


@pytest.fixture
def inventory(protos_dir, tmp_path, import_generated):
    out = tmp_path / "inventory_types"
    compile_protos(_inventory_config(protos_dir, out))
    return import_generated(out)


def _sample_item(pkg):
    inv = pkg.inventory_v1
    return inv.Item(
        sku="SKU-1",
        quantities={"lyon": 4, "berlin": 2, "austin": 9},
        prices={20: pkg.common_v1.Money(currency="EUR", units=1999), -5: pkg.common_v1.Money()},
        bins=[3, 1, 2],
        note="",
        status=inv.Status.STATUS_IN_STOCK,
        updated_at=pkg.google_protobuf.Timestamp(seconds=1_700_000_000, nanos=5),
        source=inv.Item_Source_Transfer(value=inv.Item_Transfer(warehouse="W1")),
        blob=b"\x00\xff",
        from_=True,
        flags={"b": inv.Status.STATUS_BACKORDERED, "a": inv.Status.STATUS_UNSPECIFIED},
    )


class TestGeneratedPackage:
    def test_modules_per_package(self, inventory):
        assert inventory.__all__ == ["common_v1", "google_protobuf", "inventory_v1"]
        assert inventory.inventory_v1.Item.__proto_name__ == ".inventory.v1.Item"

    def test_maps_are_key_ordered(self, inventory):
        item = _sample_item(inventory)
        assert isinstance(item.quantities, SortedDict)
        assert list(item.quantities) == ["austin", "berlin", "lyon"]
        assert list(item.prices) == [-5, 20]

    def test_insertion_order_irrelevant(self, inventory):
        inv = inventory.inventory_v1
        first = inv.Item(quantities={"b": 1, "a": 2, "c": 3})
        second = inv.Item(quantities={"c": 3, "a": 2, "b": 1})
        assert first.encode() == second.encode()
        assert first.to_json() == second.to_json()

    def test_wire_round_trip(self, inventory):
        item = _sample_item(inventory)
        assert inventory.inventory_v1.Item.decode(item.encode()) == item

    def test_json_round_trip(self, inventory):
        item = _sample_item(inventory)
        assert inventory.inventory_v1.Item.from_json(item.to_json()) == item
        assert inventory.inventory_v1.Item.from_dict(item.to_dict()) == item

    def test_json_form(self, inventory):
        data = json.loads(_sample_item(inventory).to_json())
        assert list(data["quantities"]) == ["austin", "berlin", "lyon"]
        assert data["from"] is True
        assert data["status"] == "STATUS_IN_STOCK"
        assert data["flags"] == {"a": "STATUS_UNSPECIFIED", "b": "STATUS_BACKORDERED"}
        assert data["source"] == {"case": "transfer", "value": {"warehouse": "W1"}}

    def test_every_type_serializable(self, inventory):
        generated = []
        for module in (inventory.common_v1, inventory.google_protobuf, inventory.inventory_v1):
            for obj in vars(module).values():
                if (
                    isinstance(obj, type)
                    and issubclass(obj, (Message, OneofVariant, ProtoEnum))
                    and obj.__module__ == module.__name__
                ):
                    generated.append(obj)
        assert len(generated) == 7
        assert all(issubclass(obj, Serializable) for obj in generated)

    def test_map_assignment_is_reordered(self, inventory):
        item = inventory.inventory_v1.Item()
        item.quantities = {"z": 1, "m": 2}
        assert list(item.quantities) == ["m", "z"]

    def test_defaults(self, inventory):
        item = inventory.inventory_v1.Item()
        assert item.sku == ""
        assert item.note is None
        assert item.source is None
        assert item.status is inventory.inventory_v1.Status.STATUS_UNSPECIFIED
        assert item.encode() == b""


class TestFieldsNamedAfterTypes:
    @pytest.fixture
    def naming(self, protos_dir, tmp_path, import_generated):
        out = tmp_path / "naming_types"
        compile_protos(
            CompilerConfig(
                schema_paths=[protos_dir / "naming" / "v1" / "naming.proto"],
                include_paths=[protos_dir],
                output_dir=out,
            )
        )
        return import_generated(out)

    def test_package_imports(self, naming):
        outer = naming.naming_v1.Outer()
        assert outer.Inner2_ is None
        assert outer.Level_ is naming.naming_v1.Level.LEVEL_UNSPECIFIED
        assert outer.common_v1_ is None

    def test_round_trips(self, naming):
        mod = naming.naming_v1
        outer = mod.Outer(
            Inner2=mod.Inner2(label="x"),
            Level=mod.Level.LEVEL_HIGH,
            common_v1=naming.common_v1.Money(currency="EUR", units=3),
        )
        assert mod.Outer.decode(outer.encode()) == outer
        assert mod.Outer.from_json(outer.to_json()) == outer
        data = json.loads(outer.to_json())
        assert data["Inner2"] == {"label": "x"}
        assert data["Level"] == "LEVEL_HIGH"
        assert data["common_v1"] == {"currency": "EUR", "units": 3}


class TestDeterminism:
    def test_same_input_same_output(self, protos_dir, tmp_path):
        config = _inventory_config(protos_dir, tmp_path / "out")
        assert generate_sources(config) == generate_sources(config)

    def test_written_files_identical(self, protos_dir, tmp_path):
        first, second = tmp_path / "first", tmp_path / "second"
        compile_protos(_inventory_config(protos_dir, first))
        compile_protos(_inventory_config(protos_dir, second))
        names = sorted(p.name for p in first.iterdir())
        assert names == sorted(p.name for p in second.iterdir())
        for name in names:
            assert (first / name).read_bytes() == (second / name).read_bytes()

    def test_schema_order_irrelevant(self, protos_dir, tmp_path):
        config = _inventory_config(protos_dir, tmp_path / "out")
        shuffled = config.model_copy(
            update={"schema_paths": [*reversed(config.schema_paths), config.schema_paths[0]]}
        )
        assert generate_sources(config) == generate_sources(shuffled)

    def test_generate_sources_writes_nothing(self, protos_dir, tmp_path):
        out = tmp_path / "out"
        sources = generate_sources(_inventory_config(protos_dir, out))
        assert "inventory_v1.py" in sources
        assert not out.exists()


class TestConfigurationScope:
    def test_narrow_ordered_maps(self, protos_dir, tmp_path):
        config = _inventory_config(
            protos_dir, tmp_path / "out", ordered_maps=["Item.quantities"]
        )
        source = generate_sources(config)["inventory_v1.py"]
        assert "quantities: _rt.OrderedMap[str, _rt.Int32]" in source
        assert "prices: dict[_rt.Int64, common_v1.Money]" in source

    def test_narrow_serializable(self, protos_dir, tmp_path, import_generated):
        out = tmp_path / "narrow_types"
        compile_protos(_inventory_config(protos_dir, out, serializable=[".common"]))
        pkg = import_generated(out)
        assert issubclass(pkg.common_v1.Money, Serializable)
        assert not issubclass(pkg.inventory_v1.Item, Serializable)
        assert not issubclass(pkg.inventory_v1.Status, Serializable)
        item = pkg.inventory_v1.Item(sku="x", quantities={"b": 1, "a": 2})
        assert pkg.inventory_v1.Item.decode(item.encode()) == item


class TestOutput:
    def test_descriptor_set_written(self, protos_dir, tmp_path):
        descriptor_path = tmp_path / "build" / "inventory.pb"
        compile_protos(
            _inventory_config(
                protos_dir, tmp_path / "out", descriptor_set_path=descriptor_path
            )
        )
        fds = descriptor_pb2.FileDescriptorSet.FromString(descriptor_path.read_bytes())
        names = {f.name for f in fds.file}
        assert {"inventory/v1/inventory.proto", "common/v1/money.proto"} <= names
        assert "google/protobuf/timestamp.proto" in names

    def test_unwritable_descriptor_set_fails_whole_build(self, protos_dir, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        out = tmp_path / "out"
        compiler = SchemaCompiler(
            _inventory_config(protos_dir, out, descriptor_set_path=blocker / "inventory.pb")
        )
        with pytest.raises(SchemaOutputError, match="descriptor set"):
            compiler.run()
        assert compiler.state == CompilationState.FAILED
        assert not out.exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["blocker"]

    def test_rebuild_replaces_generated_package(self, protos_dir, tmp_path):
        out = tmp_path / "out"
        compile_protos(_inventory_config(protos_dir, out))
        (out / "stale.py").write_text("x = 1\n")
        compile_protos(_inventory_config(protos_dir, out))
        assert not (out / "stale.py").exists()
        assert (out / "inventory_v1.py").exists()

    def test_refuses_foreign_directory(self, protos_dir, tmp_path):
        out = tmp_path / "out"
        out.mkdir()
        (out / "notes.txt").write_text("keep me")
        with pytest.raises(SchemaOutputError, match="not generated"):
            compile_protos(_inventory_config(protos_dir, out))
        assert (out / "notes.txt").read_text() == "keep me"
        assert sorted(p.name for p in out.iterdir()) == ["notes.txt"]

    def test_no_staging_left_behind(self, protos_dir, tmp_path):
        compile_protos(_inventory_config(protos_dir, tmp_path / "out"))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["out"]


class TestCompileErrors:
    def test_undefined_type(self, broken_dir, tmp_path):
        out = tmp_path / "out"
        with pytest.raises(SchemaResolutionError) as info:
            compile_protos(_broken_config(broken_dir, "undefined_type.proto", out))
        assert info.value.file is not None
        assert info.value.file.endswith("undefined_type.proto")
        assert info.value.line is not None
        assert "Missing" in info.value.message
        assert not out.exists()

    def test_missing_import(self, broken_dir, tmp_path):
        out = tmp_path / "out"
        with pytest.raises(SchemaResolutionError, match="does/not/exist.proto"):
            compile_protos(_broken_config(broken_dir, "missing_import.proto", out))
        assert not out.exists()

    def test_grammar_error(self, broken_dir, tmp_path):
        out = tmp_path / "out"
        with pytest.raises(SchemaGrammarError) as info:
            compile_protos(_broken_config(broken_dir, "bad_grammar.proto", out))
        assert info.value.line is not None
        assert info.value.details
        assert not out.exists()

    def test_group_rejected(self, broken_dir, tmp_path):
        out = tmp_path / "out"
        with pytest.raises(SchemaGrammarError, match="Group field"):
            compile_protos(_broken_config(broken_dir, "group_field.proto", out))
        assert not out.exists()

    def test_missing_schema(self, broken_dir, tmp_path):
        with pytest.raises(SchemaInputError, match="not found"):
            compile_protos(_broken_config(broken_dir, "nope.proto", tmp_path / "out"))

    def test_schema_outside_include_paths(self, protos_dir, broken_dir, tmp_path):
        config = CompilerConfig(
            schema_paths=[broken_dir / "undefined_type.proto"],
            include_paths=[protos_dir],
            output_dir=tmp_path / "out",
        )
        with pytest.raises(SchemaInputError, match="include path"):
            compile_protos(config)

    def test_include_path_not_directory(self, protos_dir, tmp_path):
        config = _inventory_config(
            protos_dir, tmp_path / "out", include_paths=[protos_dir, tmp_path / "missing"]
        )
        with pytest.raises(SchemaInputError, match="not a directory"):
            compile_protos(config)

    def test_failure_keeps_previous_output(self, protos_dir, broken_dir, tmp_path):
        out = tmp_path / "out"
        compile_protos(_inventory_config(protos_dir, out))
        before = {p.name: p.read_bytes() for p in out.iterdir()}
        with pytest.raises(SchemaResolutionError):
            compile_protos(_broken_config(broken_dir, "undefined_type.proto", out))
        assert {p.name: p.read_bytes() for p in out.iterdir()} == before


class TestSchemaCompilerState:
    def test_success(self, protos_dir, tmp_path):
        compiler = SchemaCompiler(_inventory_config(protos_dir, tmp_path / "out"))
        assert compiler.state == CompilationState.PENDING
        compiler.run()
        assert compiler.state == CompilationState.SUCCEEDED

    def test_failure(self, broken_dir, tmp_path):
        compiler = SchemaCompiler(
            _broken_config(broken_dir, "undefined_type.proto", tmp_path / "out")
        )
        with pytest.raises(SchemaResolutionError):
            compiler.run()
        assert compiler.state == CompilationState.FAILED

    def test_runs_at_most_once(self, protos_dir, tmp_path):
        compiler = SchemaCompiler(_inventory_config(protos_dir, tmp_path / "out"))
        compiler.run()
        with pytest.raises(RuntimeError, match="already ran"):
            compiler.run()

"""All-or-nothing write of generated output.

Files are staged next to their destination and swapped into place with
renames, so a failed build never leaves a partially written package.  The
optional descriptor set is staged alongside the package and committed with
it: if either cannot be written, neither is, and a previously generated
package is restored.  An existing output directory is only replaced if it is
empty or was itself generated (its ``__init__.py`` starts with the generated
header).
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

import structlog
from google.protobuf import descriptor_pb2

from cdc_protogen.codegen.generator import GENERATED_HEADER, INIT_MODULE
from cdc_protogen.errors import SchemaOutputError

logger = structlog.get_logger()


def _is_replaceable(output_dir: Path) -> bool:
    if not output_dir.exists():
        return True
    if not output_dir.is_dir():
        return False
    if not any(output_dir.iterdir()):
        return True
    init = output_dir / INIT_MODULE
    try:
        with init.open(encoding="utf-8") as f:
            return f.readline().rstrip("\n") == GENERATED_HEADER
    except OSError:
        return False


def _stage_package(output_dir: Path, sources: Mapping[str, str]) -> Path:
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{output_dir.name}-", dir=output_dir.parent))
    try:
        for relative, source in sorted(sources.items()):
            target = staging / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(source, encoding="utf-8")
    except OSError:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    return staging


def _stage_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
    except OSError:
        os.unlink(tmp)
        raise
    return Path(tmp)


def write_package(
    output_dir: Path,
    sources: Mapping[str, str],
    descriptor_set_path: Path | None = None,
    descriptor_set: descriptor_pb2.FileDescriptorSet | None = None,
) -> None:
    """Replace *output_dir* with a package holding *sources*.

    When *descriptor_set_path* is given, *descriptor_set* is written there in
    the same step.

    Raises:
        SchemaOutputError: the package or the descriptor set cannot be
            written; the previous output is left in place.
    """
    if not _is_replaceable(output_dir):
        msg = "Output directory exists and was not generated by cdc-protogen"
        raise SchemaOutputError(msg, file=str(output_dir))

    data: bytes | None = None
    if descriptor_set_path is not None:
        assert descriptor_set is not None
        data = descriptor_set.SerializeToString(deterministic=True)

    staging: Path | None = None
    staged_descriptor: Path | None = None
    backup: Path | None = None
    swapped = False
    failed_path = output_dir
    try:
        staging = _stage_package(output_dir, sources)
        if descriptor_set_path is not None and data is not None:
            failed_path = descriptor_set_path
            staged_descriptor = _stage_file(descriptor_set_path, data)
            failed_path = output_dir

        if output_dir.exists():
            backup = output_dir.with_name(f".{output_dir.name}-old-{staging.name}")
            output_dir.rename(backup)
        staging.rename(output_dir)
        staging = None
        swapped = True

        if descriptor_set_path is not None and staged_descriptor is not None:
            failed_path = descriptor_set_path
            os.replace(staged_descriptor, descriptor_set_path)
            staged_descriptor = None
    except OSError as exc:
        if swapped:
            shutil.rmtree(output_dir, ignore_errors=True)
        if backup is not None and not output_dir.exists():
            backup.rename(output_dir)
            backup = None
        what = "descriptor set" if failed_path == descriptor_set_path else "generated package"
        msg = f"Cannot write {what}: {exc.strerror or exc}"
        raise SchemaOutputError(msg, file=str(failed_path)) from exc
    finally:
        if staging is not None:
            shutil.rmtree(staging, ignore_errors=True)
        if staged_descriptor is not None and staged_descriptor.exists():
            staged_descriptor.unlink()
        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)

    logger.info("codegen.written", output_dir=str(output_dir), files=len(sources))
    if descriptor_set_path is not None and data is not None:
        logger.info(
            "codegen.descriptor_set_written",
            path=str(descriptor_set_path),
            bytes=len(data),
        )

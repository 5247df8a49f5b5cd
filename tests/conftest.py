"""Shared fixtures: schema fixture paths and importing generated packages."""

from __future__ import annotations

import importlib
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType

import pytest

FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def protos_dir() -> Path:
    """Include root holding the ``inventory``, ``common`` and ``naming`` schemas."""
    return FIXTURES / "protos"


@pytest.fixture
def broken_dir() -> Path:
    """Include root holding schemas that fail to compile."""
    return FIXTURES / "broken"


def _forget(package: str) -> None:
    for name in [n for n in sys.modules if n == package or n.startswith(f"{package}.")]:
        del sys.modules[name]


@pytest.fixture
def import_generated() -> Iterator[Callable[[Path], ModuleType]]:
    """Import a generated package directory by path; undone after the test."""
    added: list[tuple[str, str]] = []

    def _import(package_dir: Path) -> ModuleType:
        parent = str(package_dir.parent)
        sys.path.insert(0, parent)
        added.append((parent, package_dir.name))
        _forget(package_dir.name)
        importlib.invalidate_caches()
        return importlib.import_module(package_dir.name)

    yield _import

    for parent, package in added:
        if parent in sys.path:
            sys.path.remove(parent)
        _forget(package)

"""Protobuf path selectors.

A selector picks schema elements by their fully qualified path, e.g.
``.decoderbufs.RowMessage.new_tuple``:

- ``"."`` selects everything
- a selector starting with ``.`` is a prefix match on path components
- any other selector is a suffix match on path components
"""

from __future__ import annotations

from collections.abc import Iterable


class PathSelector:
    """Matches fully qualified protobuf paths against a list of selectors."""

    def __init__(self, selectors: Iterable[str]) -> None:
        self._selectors = tuple(selectors)

    @property
    def selectors(self) -> tuple[str, ...]:
        return self._selectors

    def matches(self, path: str) -> bool:
        """Return True if any selector matches the fully qualified *path*."""
        return any(_match(selector, path) for selector in self._selectors)


def _match(selector: str, path: str) -> bool:
    if selector == ".":
        return True
    if selector.startswith("."):
        return path == selector or path.startswith(selector + ".")
    return path == "." + selector or path.endswith("." + selector)

#!/usr/bin/env python3
"""Runnable demo: compile the change-event schema and round-trip a row change.

    uv run python examples/change_events_demo.py
"""

from __future__ import annotations

import importlib
import sys
import tempfile
from pathlib import Path

from rich.console import Console

from cdc_protogen import build_change_event_types

console = Console()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        # 1. Compile pg_logicaldec.proto into an importable package
        out = Path(tmp) / "change_events"
        build_change_event_types(out)
        console.print(f"[green]Generated[/green] {out}")

        sys.path.insert(0, tmp)
        events = importlib.import_module("change_events.decoderbufs")

        # 2. Build an UPDATE row change
        row = events.RowMessage(
            transaction_id=42,
            table="public.customers",
            op=events.Op.UPDATE,
            new_tuple=[
                events.DatumMessage(
                    column_name="email",
                    column_type=25,
                    datum=events.DatumMessage_Datum_DatumString(value="ada@example.com"),
                ),
            ],
        )

        # 3. Wire and JSON round trips
        data = row.encode()
        console.print(f"[bold]wire[/bold] {len(data)} bytes: {data.hex()}")
        assert events.RowMessage.decode(data) == row
        console.print("[bold]json[/bold]")
        console.print_json(row.to_json())


if __name__ == "__main__":
    main()

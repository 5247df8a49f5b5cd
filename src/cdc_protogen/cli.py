"""Typer CLI for the change-event schema compiler."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cdc_protogen.codegen.schema import build_schema
from cdc_protogen.codegen.selectors import PathSelector
from cdc_protogen.compiler import SchemaCompiler, build_change_event_types
from cdc_protogen.config.loader import load_compiler_config
from cdc_protogen.config.models import CompilerConfig
from cdc_protogen.errors import SchemaCompilationError

console = Console()
app = typer.Typer(name="cdc-protogen", help="Change-event schema compiler")


def _load(config_path: str) -> CompilerConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        return load_compiler_config(path)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Config error:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


def _report(exc: SchemaCompilationError) -> None:
    console.print(f"[red]{type(exc).__name__}:[/red] {escape(str(exc))}")
    if exc.details:
        console.print(exc.details, markup=False, highlight=False)


def _scope(selectors: list[str], everything: bool) -> str:
    if everything:
        return "all paths"
    if not selectors:
        return "none"
    return escape(", ".join(selectors))


@app.command()
def build(
    config_path: str = typer.Argument(..., help="Path to build config YAML"),
) -> None:
    """Compile schemas and write the generated package."""
    config = _load(config_path)
    try:
        SchemaCompiler(config).run()
    except SchemaCompilationError as exc:
        _report(exc)
        raise typer.Exit(1) from exc
    console.print(f"[green]Generated[/green] {config.output_dir}")


@app.command()
def check(
    config_path: str = typer.Argument(..., help="Path to build config YAML"),
) -> None:
    """Parse and resolve schemas without writing; summarize the generated types."""
    config = _load(config_path)
    try:
        schema = build_schema(SchemaCompiler(config).load())
    except SchemaCompilationError as exc:
        _report(exc)
        raise typer.Exit(1) from exc

    ordered = PathSelector(config.ordered_maps)
    serializable = PathSelector(config.serializable)
    table = Table(title="Generated modules")
    table.add_column("Module")
    table.add_column("Package")
    table.add_column("Messages", justify="right")
    table.add_column("Enums", justify="right")
    table.add_column("Map fields", justify="right")
    table.add_column("Ordered maps", justify="right")
    table.add_column("Serializable", justify="right")
    for name, module in schema.modules.items():
        maps = [f for m in module.messages for f in m.map_fields]
        types = [m.full_name for m in module.messages] + [
            e.full_name for e in module.enums
        ]
        table.add_row(
            name,
            module.package or "(none)",
            str(len(module.messages)),
            str(len(module.enums)),
            str(len(maps)),
            str(sum(1 for f in maps if ordered.matches(f.path))),
            f"{sum(1 for t in types if serializable.matches(t))}/{len(types)}",
        )
    console.print(table)
    console.print(f"Key-ordered maps: {_scope(config.ordered_maps, config.orders_all_maps)}")
    console.print(
        f"Serializable types: {_scope(config.serializable, config.serializes_all_types)}"
    )
    console.print("[green]Valid[/green]")


@app.command("build-change-events")
def build_change_events(
    output_dir: str = typer.Argument(..., help="Directory for the generated package"),
) -> None:
    """Compile the bundled pg_logicaldec.proto change-event schema."""
    try:
        build_change_event_types(Path(output_dir))
    except SchemaCompilationError as exc:
        _report(exc)
        raise typer.Exit(1) from exc
    console.print(f"[green]Generated[/green] {output_dir}")


if __name__ == "__main__":
    app()

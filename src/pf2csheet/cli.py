from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from pf2csheet.engine.engine import Selections, resolve_character
from pf2csheet.engine.errors import CatalogError
from pf2csheet.engine.loader import Catalog, load_catalog
from pf2csheet.engine.modifiers_runtime import ModifiersEngine
from pf2csheet.engine.settings import Settings, load_settings
from pf2csheet.engine.state import CharacterState, GrantedNode
from pf2csheet.tools import validate as validate_tool
from pf2csheet.util.paths import content_dir

app = typer.Typer(add_completion=False)
console = Console()


def _setup(verbose: bool) -> Settings:
    settings = load_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    return settings


def _catalog(content: Optional[Path], settings: Settings) -> Catalog:
    try:
        return load_catalog(content or content_dir(settings))
    except CatalogError as e:
        typer.echo(f"[ERROR] {e}", err=True)
        raise typer.Exit(code=1)


def _resolve(selections_file: Path, level: Optional[int], content: Optional[Path], verbose: bool) -> CharacterState:
    settings = _setup(verbose)
    catalog = _catalog(content, settings)
    selections = Selections.model_validate_json(selections_file.read_text(encoding="utf-8"))
    return resolve_character(catalog, selections, level=level, settings=settings)


def _add_nodes(table: Table, node: GrantedNode, depth: int) -> None:
    table.add_row(str(node.level), node.kind, "  " * depth + node.name, node.status.value, "; ".join(node.warnings))
    for child in node.children:
        _add_nodes(table, child, depth + 1)


def _pending_table(state: CharacterState) -> Table:
    table = Table(title="Pending choices", show_header=True, header_style="bold")
    for col in ("Instance", "Resource", "Choice", "Tag", "Kind"):
        table.add_column(col)
    for p in state.pending:
        table.add_row(p.instance, p.resource, p.label, f"${p.tag}", p.kind)
    return table


@app.command()
def sheet(selections_file: Path = typer.Argument(..., exists=True, dir_okay=False),
          level: Optional[int] = typer.Option(None, "--level", min=1, max=20),
          content: Optional[Path] = typer.Option(None, "--content"),
          explain: Optional[str] = typer.Option(None, "--explain", help="Show the contributions to one label"),
          verbose: bool = typer.Option(False, "--verbose", "-v")):
    state = _resolve(selections_file, level, content, verbose)

    stats = Table(title=f"{state.name}: level {state.level} {state.ancestry or '?'} {state.class_name or '?'}",
                  pad_edge=False, show_header=False)
    for line in sorted(state.labels.values(), key=lambda s: s.label.lower()):
        stats.add_row(line.label, line.display())
    if state.focus_point_cap and state.total("Focus Points"):
        stats.add_row("Focus pool", str(state.focus_points))
    console.print(stats)

    profs = Table(title="Proficiencies", show_header=True, header_style="bold")
    profs.add_column("Category")
    profs.add_column("Rank")
    profs.add_column("Bonus", justify="right")
    for key, entry in sorted(state.proficiencies.items()):
        profs.add_row(entry.category, entry.rank.value, f"+{state.proficiency_bonus(key)}")
    console.print(profs)

    tree = Table(title="Granted", show_header=True, header_style="bold")
    for col in ("Level", "Kind", "Resource", "Status", "Notes"):
        tree.add_column(col)
    for root in state.tree:
        _add_nodes(tree, root, 0)
    console.print(tree)

    if state.items:
        items = Table(title="Items", show_header=False, pad_edge=False)
        for item in state.items.values():
            traits = ", ".join(item.traits + item.qualities)
            items.add_row(item.name, item.item_type, traits)
        console.print(items)
    if state.pending:
        console.print(_pending_table(state))
    for d in state.diagnostics:
        typer.echo(f"[{d.kind}] {d.message}", err=True)
    if explain:
        lines = ModifiersEngine(state).explain(explain)
        if not lines:
            typer.echo(f"No label named '{explain}'", err=True)
        for line in lines:
            typer.echo(line)


@app.command()
def pending(selections_file: Path = typer.Argument(..., exists=True, dir_okay=False),
            level: Optional[int] = typer.Option(None, "--level", min=1, max=20),
            content: Optional[Path] = typer.Option(None, "--content"),
            verbose: bool = typer.Option(False, "--verbose", "-v")):
    state = _resolve(selections_file, level, content, verbose)
    if not state.pending:
        typer.echo("No pending choices.")
        return
    console.print(_pending_table(state))


@app.command("validate-content")
def validate_content(content: Optional[Path] = typer.Argument(None)):
    validate_tool.validate_content(content)


@app.command("export-schemas")
def export_schemas(out: Path = typer.Option(Path("docs/schemas"), "--out")):
    validate_tool.export_schemas_cmd(out)


if __name__ == "__main__":
    app()

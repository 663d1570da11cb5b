from __future__ import annotations
from pathlib import Path
from typing import Any, List, Optional, Tuple
import typer

from pf2csheet.engine.errors import CatalogError, ExpressionError
from pf2csheet.engine.expr import choice_refs, parse_expression, template_expressions
from pf2csheet.engine.loader import Catalog, check_advancement, load_catalog
from pf2csheet.engine.schema_models import ResourceDefinition
from pf2csheet.util.paths import content_dir as bundled_content_dir


def _check_expr(expr: Any, d: ResourceDefinition, *, where: str) -> Optional[str]:
    if not isinstance(expr, str):
        return None
    try:
        parse_expression(expr.strip())
    except ExpressionError as e:
        return f"{where}: {type(e).__name__}: {e}"
    undeclared = sorted(choice_refs(expr) - {s.tag for s in d.slots})
    if undeclared:
        return f"{where}: undeclared choice(s) " + ", ".join("$" + t for t in undeclared)
    return None


def _definition_errors(d: ResourceDefinition, source: str) -> List[str]:
    errs: List[str] = []
    for idx, eff in enumerate(d.effects):
        where = f"{source}: {d.kind} '{d.name}' effect #{idx}"
        if eff.op == "bonus":
            msg = _check_expr(eff.value, d, where=where)
        elif eff.op == "focus pool":
            msg = _check_expr(eff.points, d, where=where)
        else:
            msg = None
        if msg:
            errs.append(msg)
    for expr in template_expressions(d.description):
        msg = _check_expr(expr, d, where=f"{source}: {d.kind} '{d.name}' description [[ {expr} ]]")
        if msg:
            errs.append(msg)
    return errs


def validate_catalog(catalog: Catalog) -> Tuple[List[str], List[str]]:
    """(errors, warnings) for an already loaded catalog."""
    errors: List[str] = []
    for key, definition in sorted(catalog.resources.items()):
        errors.extend(_definition_errors(definition, catalog.sources.get(key, "<memory>")))
    warnings = check_advancement(catalog)
    for d in catalog.by_kind("feat"):
        if not d.categories and not d.traits:
            warnings.append(f"feat '{d.name}' has no category and cannot fill any feat slot")
    return errors, warnings


def validate_dir(root: Path) -> Tuple[List[str], List[str]]:
    try:
        catalog = load_catalog(root)
    except CatalogError as e:
        return [str(e)], []
    return validate_catalog(catalog)


app = typer.Typer(add_completion=False)


@app.command("validate-content")
def validate_content(content_dir: Optional[Path] = typer.Argument(None)):
    root = content_dir or bundled_content_dir()
    errors, warnings = validate_dir(root)
    for msg in errors:
        typer.echo(f"[ERROR] {msg}", err=True)
    for msg in warnings:
        typer.echo(f"[WARN] {msg}")
    if errors:
        raise typer.Exit(code=1)
    typer.echo(f"Content validated successfully: {root}")


@app.command("export-schemas")
def export_schemas_cmd(out: Path = typer.Option(Path("docs/schemas"), "--out")):
    from pf2csheet.tools.export_schemas import export_schemas
    export_schemas(out)
    typer.echo(f"Exported schemas to {out}")


if __name__ == "__main__":
    app()

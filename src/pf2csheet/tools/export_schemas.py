from __future__ import annotations
from pathlib import Path
import json
from pf2csheet.engine.engine import Selections
from pf2csheet.engine.schema_models import ResourceDefinition
from pf2csheet.engine.state import CharacterState


def export_schemas(out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    schemas = {
        "ResourceDefinition.schema.json": ResourceDefinition.model_json_schema(),
        "Selections.schema.json": Selections.model_json_schema(),
        "CharacterState.schema.json": CharacterState.model_json_schema(),
    }
    for name, schema in schemas.items():
        (out_dir / name).write_text(json.dumps(schema, indent=2), encoding="utf-8")


if __name__ == "__main__":
    root = Path(__file__).resolve().parents[3] / "docs" / "schemas"
    export_schemas(root)
    print(f"Exported schemas to {root}")

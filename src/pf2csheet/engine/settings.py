from __future__ import annotations
import os
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Optional

SETTINGS_HOME = Path(os.environ.get("PF2CSHEET_HOME", Path.home() / ".pf2csheet"))
SETTINGS_PATH = SETTINGS_HOME / "settings.json"


class Settings(BaseModel):
    content_dir: Optional[str] = None  # None -> bundled content
    log_level: str = "WARNING"
    max_focus_points: int = Field(default=3, ge=1)
    max_settle_passes: int = Field(default=4, ge=1)
    base_ability_score: int = 10


def load_settings(path: Optional[Path] = None) -> Settings:
    path = path or SETTINGS_PATH
    if path.exists():
        return Settings.model_validate_json(path.read_text(encoding="utf-8"))
    path.parent.mkdir(parents=True, exist_ok=True)
    s = Settings()
    path.write_text(s.model_dump_json(indent=2), encoding="utf-8")
    return s


def save_settings(s: Settings, path: Optional[Path] = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(s.model_dump_json(indent=2), encoding="utf-8")

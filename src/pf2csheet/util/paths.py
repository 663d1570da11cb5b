from __future__ import annotations
from pathlib import Path
from typing import Optional
import sys

from pf2csheet.engine.settings import Settings


def package_dir() -> Path:
    # PyInstaller --onefile unpacks data under sys._MEIPASS
    if hasattr(sys, "_MEIPASS"):
        return Path(sys._MEIPASS) / "pf2csheet"  # type: ignore[attr-defined]
    return Path(__file__).resolve().parent.parent  # src/pf2csheet


def content_dir(settings: Optional[Settings] = None) -> Path:
    """The configured content directory, else the bundled core-rulebook subset."""
    if settings is not None and settings.content_dir:
        return Path(settings.content_dir).expanduser()
    return package_dir() / "content"

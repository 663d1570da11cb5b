import pytest
from pydantic import ValidationError
from pf2csheet.engine.settings import Settings, load_settings, save_settings


def test_first_load_writes_defaults(tmp_path):
    path = tmp_path / "home" / "settings.json"
    s = load_settings(path)
    assert s == Settings()
    assert path.exists()


def test_round_trip(tmp_path):
    path = tmp_path / "settings.json"
    save_settings(Settings(max_settle_passes=6, log_level="DEBUG", content_dir="/srv/content"), path)
    s = load_settings(path)
    assert s.max_settle_passes == 6
    assert s.log_level == "DEBUG"
    assert s.content_dir == "/srv/content"


def test_limits_are_validated():
    with pytest.raises(ValidationError):
        Settings(max_settle_passes=0)
    with pytest.raises(ValidationError):
        Settings(max_focus_points=0)

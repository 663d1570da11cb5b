import pytest
from typer.testing import CliRunner
from pf2csheet import cli
from pf2csheet.engine import settings as settings_module

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings_module, "SETTINGS_PATH", tmp_path / "home" / "settings.json")


@pytest.fixture
def selections_file(tmp_path, monk):
    path = tmp_path / "mei.json"
    path.write_text(monk.model_dump_json(), encoding="utf-8")
    return path


def test_sheet(selections_file):
    result = runner.invoke(cli.app, ["sheet", str(selections_file), "--explain", "Speed"])
    assert result.exit_code == 0, result.output
    assert "Proficiencies" in result.output
    assert "from Human [L1/ancestry/Human]" in result.output


def test_pending(selections_file):
    result = runner.invoke(cli.app, ["pending", str(selections_file)])
    assert result.exit_code == 0, result.output
    assert "No pending choices." in result.output

    result = runner.invoke(cli.app, ["pending", str(selections_file), "--level", "2"])
    assert result.exit_code == 0, result.output
    assert "Pending choices" in result.output


def test_validate_bundled_content():
    result = runner.invoke(cli.app, ["validate-content"])
    assert result.exit_code == 0, result.output
    assert "validated successfully" in result.output


def test_validate_reports_bad_expressions(tmp_path):
    (tmp_path / "feats.yaml").write_text(
        "- name: Sloppy\n  categories: [General]\n  effects:\n    - bonus:\n        to: AC\n        value: 2 + 3 * 4\n",
        encoding="utf-8")
    result = runner.invoke(cli.app, ["validate-content", str(tmp_path)])
    assert result.exit_code == 1
    assert "[ERROR]" in result.output and "AmbiguousPrecedence" in result.output


def test_validate_reports_undeclared_template_choices(tmp_path):
    (tmp_path / "feats.yaml").write_text(
        "- name: Vague\n  categories: [General]\n  description: \"You get [[ 10 + $skill ]].\"\n",
        encoding="utf-8")
    result = runner.invoke(cli.app, ["validate-content", str(tmp_path)])
    assert result.exit_code == 1
    assert "undeclared choice(s) $skill" in result.output


def test_validate_reports_catalog_errors(tmp_path):
    (tmp_path / "bad.yaml").write_text("- spell:\n    name: Shield\n", encoding="utf-8")
    result = runner.invoke(cli.app, ["validate-content", str(tmp_path)])
    assert result.exit_code == 1
    assert "unknown entry tag" in result.output


def test_export_schemas(tmp_path):
    out = tmp_path / "schemas"
    result = runner.invoke(cli.app, ["export-schemas", "--out", str(out)])
    assert result.exit_code == 0, result.output
    assert sorted(p.name for p in out.iterdir()) == [
        "CharacterState.schema.json", "ResourceDefinition.schema.json", "Selections.schema.json",
    ]

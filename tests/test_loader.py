import pytest
from pf2csheet.engine.errors import CatalogError
from pf2csheet.engine.loader import load_catalog, load_documents, normalize_effect
from pf2csheet.engine.schema_models import Rank


def test_bundled_content_loads(catalog):
    monk = catalog.require("class", "Monk")
    assert monk.progression.hp_per_level == 10
    assert monk.progression.fort_save == Rank.EXPERT
    assert "powerful fist" in monk.progression.advancement[1]
    # hoisted out of class features
    assert ("action", "Flurry of Blows") in catalog
    fist = catalog.require("item", "fist")
    assert fist.item_type == "weapon"
    assert fist.properties["damage die"] == "d6"
    assert catalog.find("crane stance").kind == "feat"
    assert catalog.get("class feature", "Incredible Movement") is not None


def test_feat_lookup_by_category(catalog):
    names = {d.name for d in catalog.feats(["Monk"])}
    assert {"Crane Stance", "Dragon Stance", "Ki Rush", "Ki Strike", "Monastic Weaponry"} <= names
    assert "Fleet" not in names


def test_duplicate_definitions_fail():
    doc = [{"feat": {"name": "Fleet", "level": 1}}]
    with pytest.raises(CatalogError) as e:
        load_documents([("a.yaml", doc), ("b.yaml", doc)])
    assert "a.yaml" in str(e.value)
    assert e.value.source == "b.yaml"


def test_same_name_different_kind_is_fine():
    cat = load_documents([("a.yaml", [{"feat": {"name": "Fist"}}, {"item": {"name": "Fist", "weapon": {}}}])])
    assert len(cat) == 2


def test_unknown_effect_variant():
    with pytest.raises(CatalogError, match="unknown effect variant"):
        load_documents([("a.yaml", [{"feat": {"name": "X", "effects": [{"teleport": {"to": "moon"}}]}}])])


def test_unknown_condition_key():
    doc = [{"feat": {"name": "X", "conditions": {"phase of moon": "full"}}}]
    with pytest.raises(CatalogError):
        load_documents([("a.yaml", doc)])


def test_unknown_entry_tag():
    with pytest.raises(CatalogError, match="unknown entry tag"):
        load_documents([("a.yaml", [{"spell": {"name": "X"}}, {"deity": {"name": "Y"}}])])


def test_undeclared_symbol_rejected():
    doc = [{"feat": {"name": "X", "effects": [{"bonus": {"to": "$skill", "value": 1}}]}}]
    with pytest.raises(CatalogError, match="undeclared"):
        load_documents([("a.yaml", doc)])


def test_duplicate_choice_tags_rejected():
    doc = [{"feat": {"name": "X", "questions": [
        {"label": "A", "tag": "skill", "skill": {}},
        {"label": "B", "tag": "$skill", "skill": {}},
    ]}}]
    with pytest.raises(CatalogError, match="duplicate choice tags"):
        load_documents([("a.yaml", doc)])


def test_effect_shorthands():
    eff, hoisted = normalize_effect("gain focus pool", owner="X", source="t")
    assert eff == {"op": "focus pool"} and hoisted == []
    eff, _ = normalize_effect({"gain spell": "ki rush"}, owner="X", source="t")
    assert eff == {"op": "gain spell", "spell": "ki rush"}
    eff, _ = normalize_effect({"grant feat": "Assurance (religion)"}, owner="X", source="t")
    assert eff == {"op": "grant", "kind": "feat", "resource": "Assurance (religion)"}


def test_sibling_conditions_merge_with_inline_ones():
    raw = {
        "bonus": {"to": "AC", "value": 1, "conditions": {"armor category": "unarmored"}},
        "conditions": {"item trait": "monk"},
    }
    eff, _ = normalize_effect(raw, owner="X", source="t")
    assert eff["conditions"] == {"AND": [{"armor category": "unarmored"}, {"item trait": "monk"}]}


def test_inline_item_and_action_are_hoisted():
    doc = [{"class features": {"gift": {"effects": [
        {"give item": {"weapon": {"name": "Staff", "weapon": {"hands": 2}}}},
        {"gain action": {"name": "Spin", "actions": 2}},
    ]}}}]
    cat = load_documents([("a.yaml", doc)])
    gift = cat.require("class feature", "gift")
    assert [(e.op, e.resource, e.kind) for e in gift.effects] == [("grant", "Staff", "item"), ("grant", "Spin", "action")]
    assert cat.require("item", "Staff").properties == {"hands": 2}
    assert cat.require("action", "Spin").actions == 2


def test_class_progression_split():
    doc = [{"class": {
        "name": "Tester", "hp per level": 6, "advancement": {1: ["initial proficiencies", "tester feat"]},
        "class features": {"knack": {"description": "x"}},
    }}]
    cat = load_documents([("a.yaml", doc)])
    tester = cat.require("class", "Tester")
    assert tester.progression.hp_per_level == 6
    assert cat.get("class feature", "knack") is not None


def test_advancement_out_of_range():
    doc = [{"class": {"name": "Tester", "advancement": {21: ["tester feat"]}}}]
    with pytest.raises(CatalogError):
        load_documents([("a.yaml", doc)])


def test_untagged_entries_are_feats():
    cat = load_documents([("feats.yaml", [{"name": "Quick Jump", "level": 1, "categories": ["Skill"]}])])
    assert cat.require("feat", "Quick Jump").has_tag("skill")


def test_load_catalog_errors(tmp_path):
    with pytest.raises(CatalogError, match="not found"):
        load_catalog(tmp_path / "missing")
    (tmp_path / "bad.yaml").write_text("- feat: [unclosed\n", encoding="utf-8")
    with pytest.raises(CatalogError, match="unreadable"):
        load_catalog(tmp_path)


def test_load_catalog_reads_json_and_yaml(tmp_path):
    (tmp_path / "a.yaml").write_text("- feat:\n    name: Fleet\n", encoding="utf-8")
    (tmp_path / "b.json").write_text('[{"background": {"name": "Acolyte"}}]', encoding="utf-8")
    cat = load_catalog(tmp_path)
    assert cat.source_of(cat.require("feat", "fleet")).endswith("a.yaml")
    assert cat.get("background", "acolyte") is not None

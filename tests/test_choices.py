import pytest
from pf2csheet.engine.choices import ChoiceResolver, ResourceInstance
from pf2csheet.engine.schema_models import ChoiceSlot, Rank
from pf2csheet.engine.state import CharacterState, ProficiencyEntry


@pytest.fixture
def state():
    s = CharacterState(level=3)
    s.proficiencies["athletics"] = ProficiencyEntry(category="athletics", rank=Rank.TRAINED)
    s.proficiencies["lore (warfare)"] = ProficiencyEntry(category="lore (warfare)", rank=Rank.TRAINED)
    return s


def _slot(kind, **options):
    return ChoiceSlot(label=kind, tag="x", kind=kind, options=options)


def test_skill_constraints(catalog, state):
    r = ChoiceResolver(catalog, {})
    assert r.validate(_slot("skill"), "Athletics", state) == ("athletics", None)
    assert r.validate(_slot("skill"), "Lore (Sailing)", state) == ("lore (sailing)", None)
    value, problem = r.validate(_slot("skill", min_proficiency="trained"), "stealth", state)
    assert value is None and "at least trained" in problem
    value, problem = r.validate(_slot("skill", untrained_only=True), "athletics", state)
    assert value is None and "already trained" in problem
    assert r.validate(_slot("skill"), "basket weaving", state)[0] is None


def test_lore_topic_only_new(catalog, state):
    r = ChoiceResolver(catalog, {})
    assert r.validate(_slot("lore topic", only_new=True), "Sailing", state) == ("sailing", None)
    assert r.validate(_slot("lore topic", only_new=True), "warfare", state)[0] is None


def test_feat_slot_checks_category(catalog, state):
    r = ChoiceResolver(catalog, {})
    slot = ChoiceSlot(label="Monk feat", tag="feat", kind="feat", options={"categories": ["Monk"]})
    assert r.validate(slot, "crane stance", state) == ("Crane Stance", None)
    value, problem = r.validate(slot, "Fleet", state)
    assert value is None and "not a Monk feat" in problem
    assert r.validate(slot, "No Such Feat", state)[0] is None


def test_ancestry_feat_needs_trait(catalog, state):
    r = ChoiceResolver(catalog, {})
    slot = ChoiceSlot(label="Ancestry feat", tag="feat", kind="feat",
                      options={"categories": ["Ancestry"], "traits": ["Elf"]})
    value, problem = r.validate(slot, "General Training", state)
    assert value is None and "Elf" in problem


def test_saves_abilities_distances_traditions(catalog, state):
    r = ChoiceResolver(catalog, {})
    assert r.validate(_slot("saving throw"), "Fort", state) == ("fortitude", None)
    assert r.validate(_slot("saving throw"), "luck", state)[0] is None
    assert r.validate(_slot("ability", choices=["STR", "DEX"]), "dexterity", state) == ("DEX", None)
    assert r.validate(_slot("ability", choices=["STR", "DEX"]), "WIS", state)[0] is None
    assert r.validate(_slot("distance"), "+15 ft", state) == (15, None)
    assert r.validate(_slot("distance"), 20, state) == (20, None)
    assert r.validate(_slot("spell tradition"), "Occult", state) == ("occult", None)
    assert r.validate(_slot("spell tradition"), "psychic", state)[0] is None
    assert r.validate(_slot("text"), "", state) == (None, "empty answer")


def test_resolve_binds_and_reports_pending(catalog, state):
    definition = catalog.require("class feature", "path to perfection")
    inst = ResourceInstance(key="L7/path to perfection", definition=definition, level=7)
    r = ChoiceResolver(catalog, {})
    bound, pending, problems = r.resolve(inst, state)
    assert bound.bindings == {}
    assert [(p.tag, p.kind) for p in pending] == [("save", "saving throw")]
    assert problems == []

    r = ChoiceResolver(catalog, {("L7/path to perfection", "save"): "Will"})
    bound, pending, problems = r.resolve(inst, state)
    assert dict(bound.bindings) == {"save": "will"}
    assert pending == [] and problems == []
    # the original instance is untouched
    assert inst.bindings == {}


def test_invalid_answer_stays_pending(catalog, state):
    definition = catalog.require("class feature", "path to perfection")
    inst = ResourceInstance(key="k", definition=definition, level=7)
    bound, pending, problems = ChoiceResolver(catalog, {("k", "save"): "luck"}).resolve(inst, state)
    assert "save" not in bound.bindings
    assert len(pending) == 1
    assert problems and problems[0].startswith("$save:")


def test_optional_slots_never_pend(catalog, state):
    definition = catalog.require("class feature", "monk expertise")
    inst = ResourceInstance(key="k", definition=definition, level=9)
    _, pending, _ = ChoiceResolver(catalog, {}).resolve(inst, state)
    assert pending == []


def test_distinct_answers_within_one_instance(catalog, state):
    definition = catalog.require("ancestry", "Human")
    inst = ResourceInstance(key="a", definition=definition, level=1)
    answers = {("a", "boost_1"): "STR", ("a", "boost_2"): "str"}
    bound, pending, problems = ChoiceResolver(catalog, answers).resolve(inst, state)
    assert dict(bound.bindings) == {"boost_1": "STR"}
    assert [p.tag for p in pending] == ["boost_2"]
    assert "already chosen" in problems[0]


def test_identity_includes_bindings(catalog):
    definition = catalog.require("feat", "Assurance")
    a = ResourceInstance(key="a", definition=definition, level=1).with_bindings({"skill": "religion"})
    b = ResourceInstance(key="b", definition=definition, level=2).with_bindings({"skill": "religion"})
    c = ResourceInstance(key="c", definition=definition, level=2).with_bindings({"skill": "athletics"})
    assert a.identity == b.identity
    assert a.identity != c.identity

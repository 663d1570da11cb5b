from pf2csheet.engine.expr import Symbolic
from pf2csheet.engine.modifiers_runtime import ModifiersEngine, apply_stacking, dice_average
from pf2csheet.engine.state import CharacterState, Contribution


def _c(value, bonus_type="untyped", source="s"):
    return Contribution(source=source, source_name=source, bonus_type=bonus_type, value=value)


def test_same_type_bonuses_do_not_stack():
    assert apply_stacking([_c(2, "status"), _c(4, "status")]) == 4


def test_untyped_stacks_with_typed():
    assert apply_stacking([_c(2), _c(4, "status")]) == 6
    assert apply_stacking([_c(2), _c(3)]) == 5


def test_worst_penalty_per_type():
    cs = [_c(-1, "circumstance"), _c(-2, "circumstance"), _c(1, "circumstance")]
    assert apply_stacking(cs) == -1
    assert [c.applied for c in cs] == [False, True, True]


def test_error_contributions_do_not_count():
    err = Contribution(source="x", source_name="x", error="boom")
    assert apply_stacking([_c(3), err]) == 3
    assert err.applied is False


def test_engine_tracks_provenance_and_formulas():
    state = CharacterState()
    eng = ModifiersEngine(state)
    eng.add("Speed", 25, source="L1/ancestry/Human", source_name="Human")
    eng.add("speed", 10, source="L3/incredible movement", source_name="incredible movement", bonus_type="status")
    eng.add("Speed", 15, source="L7/incredible movement", source_name="incredible movement", bonus_type="status")
    assert state.total("SPEED") == 40
    assert [c.applied for c in state.stat("Speed").contributions] == [True, False, True]
    eng.add("weapon damage", Symbolic("1d6"), source="x", source_name="x")
    assert state.stat("weapon damage").display() == "1d6"
    eng.add("weapon damage", 2, source="y", source_name="y")
    assert state.stat("weapon damage").display() == "2 + 1d6"
    assert any("[Bonus] Speed" in line for line in eng.trace.dump())


def test_fractional_values_round_down():
    state = CharacterState()
    ModifiersEngine(state).add("HP", 3.5, source="x", source_name="x")
    assert state.total("HP") == 3


def test_explain_lists_every_source():
    state = CharacterState()
    eng = ModifiersEngine(state)
    eng.add("AC", 1, source="a", source_name="Shield", bonus_type="circumstance")
    eng.add("AC", 2, source="b", source_name="Cover", bonus_type="circumstance")
    lines = eng.explain("ac")
    assert lines[0].endswith("(not applied)")
    assert "Cover" in lines[1] and "not applied" not in lines[1]


def test_same_type_dice_bonuses_do_not_stack():
    state = CharacterState()
    eng = ModifiersEngine(state)
    eng.add("damage", Symbolic("1d6"), source="a", source_name="A", bonus_type="status")
    eng.add("damage", Symbolic("2d6"), source="b", source_name="B", bonus_type="status")
    eng.add("damage", Symbolic("1d4"), source="c", source_name="C")
    line = state.stat("damage")
    assert line.formulas == ["2d6", "1d4"]
    assert [c.applied for c in line.contributions] == [False, True, True]


def test_dice_tie_keeps_earlier_bonus():
    state = CharacterState()
    eng = ModifiersEngine(state)
    eng.add("damage", Symbolic("2d4"), source="a", source_name="A", bonus_type="item")
    eng.add("damage", Symbolic("1d9"), source="b", source_name="B", bonus_type="item")
    eng.add("damage", Symbolic("1d6"), source="c", source_name="C", bonus_type="circumstance")
    assert state.stat("damage").formulas == ["2d4", "1d6"]


def test_dice_average():
    assert dice_average("2d6 + 1d4") == 9.5
    assert dice_average("1d6 + 4") == 3.5


def test_fractions_round_down_after_stacking():
    state = CharacterState()
    eng = ModifiersEngine(state)
    eng.add("Focus Points", 0.5, source="a", source_name="A")
    eng.add("Focus Points", 0.5, source="b", source_name="B")
    assert state.total("Focus Points") == 1
    assert apply_stacking([_c(1.5), _c(1.5, "status"), _c(-0.5)]) == 2

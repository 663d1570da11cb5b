import pytest
from pf2csheet.engine.errors import AmbiguousPrecedence, ExpressionError, ExpressionSyntaxError, UnresolvedReference
from pf2csheet.engine.expr import EvalContext, Symbolic, choice_refs, evaluate, references, render_template


def _ctx(labels=None, **bindings):
    labels = {k.lower(): v for k, v in (labels or {}).items()}
    return EvalContext(lambda name: labels.get(name.lower()), bindings)


def test_plain_arithmetic():
    assert evaluate("2 + 3") == 5
    assert evaluate("(2 + 3) * 4") == 20
    assert evaluate("2 * (3 + 4)") == 14
    assert evaluate("10 - 2 - 3") == 5
    assert evaluate(7) == 7


def test_mixed_operators_need_parentheses():
    with pytest.raises(AmbiguousPrecedence):
        evaluate("2 + 3 * 4")
    with pytest.raises(AmbiguousPrecedence):
        evaluate("2 * 3 - 1")


def test_label_plus_choice():
    ctx = _ctx({"AC": 18, "will": 9}, save="will")
    assert evaluate("AC + $save", ctx) == 27


def test_choice_bound_to_distance():
    assert evaluate("$speed", _ctx(speed="+10 ft")) == 10
    assert evaluate("$speed + 5", _ctx(speed=15)) == 20


def test_underscores_read_as_spaces():
    ctx = _ctx({"monk class dc": 3})
    assert evaluate("10 + monk_class_DC", ctx) == 13


def test_unresolved_names_raise():
    with pytest.raises(UnresolvedReference):
        evaluate("Speed + 5", _ctx())
    with pytest.raises(UnresolvedReference):
        evaluate("$missing", _ctx())


def test_syntax_errors():
    for bad in ("", "2 +", "(2 + 3", "2 $", "2 3"):
        with pytest.raises(ExpressionSyntaxError):
            evaluate(bad)


def test_division_by_zero_is_an_expression_error():
    with pytest.raises(ExpressionError):
        evaluate("4 / 0")


def test_division_result():
    assert evaluate("7 / 2") == 3.5
    assert evaluate("8 / 2") == 4


def test_dice_stay_symbolic():
    assert evaluate("1d6") == Symbolic("1d6")
    assert evaluate("1d6 + 2 + 2") == Symbolic("1d6 + 4")
    assert evaluate("1d6 - 1") == Symbolic("1d6 - 1")
    assert evaluate("2d8 + STR", _ctx({"STR": 3})) == Symbolic("2d8 + 3")
    # folded value equals the identity: dropped
    assert evaluate("1d6 + (2 - 2)") == Symbolic("1d6")


def test_references():
    labels, choices = references("AC + $save + (level * 2)")
    assert labels == {"AC", "level"}
    assert choices == {"save"}
    assert choice_refs("10 + $skill + $Skill_2") == {"skill", "Skill_2"}
    assert choice_refs(4) == set()


def test_templates_render_values_and_errors():
    ctx = _ctx({"level": 3}, speed=10)
    assert render_template("+[[ $speed ]]-foot bonus", ctx) == "+10-foot bonus"
    assert render_template("HP +[[ level ]]", ctx) == "HP +3"
    errors = []
    out = render_template("x [[ 2 + 3 * 4 ]] y", ctx, errors)
    assert out.startswith("x <<AmbiguousPrecedence:")
    assert out.endswith(">> y")
    assert len(errors) == 1
    assert render_template("no templates here") == "no templates here"

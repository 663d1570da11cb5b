from __future__ import annotations
from typing import Dict, List, Optional
import math
import re

from .expr import Symbolic, Value
from .state import CharacterState, Contribution, StatLine, label_key
from .trace import TraceSession

# Typed bonus stacking policy: one bonus and one penalty per type, everything untyped adds up
TYPED_NO_STACK = {"circumstance", "item", "proficiency", "status"}

_DICE_RE = re.compile(r"(\d+)\s*d\s*(\d+)", re.I)


def dice_average(formula: str) -> float:
    """Average roll of every dice term in a formula; '2d6 + 1d4' -> 9.5"""
    return sum(int(n) * (int(sides) + 1) / 2 for n, sides in _DICE_RE.findall(formula))


def apply_stacking(contributions: List[Contribution]) -> int:
    """
    Mark which contributions count and return the stacked total.
    Per type: the highest bonus and the lowest penalty apply. Untyped always applies.
    Dice bonuses compete only with dice bonuses of the same type, by average roll;
    on a tie the earlier one keeps its place. The total is rounded down once, after stacking.
    """
    best: Dict[str, int] = {}
    worst: Dict[str, int] = {}
    rolled: Dict[str, int] = {}
    for idx, c in enumerate(contributions):
        c.applied = c.error is None
        if not c.applied or c.bonus_type not in TYPED_NO_STACK:
            continue
        if c.formula:
            prev = rolled.get(c.bonus_type)
            if prev is None or dice_average(c.formula) > dice_average(contributions[prev].formula):
                rolled[c.bonus_type] = idx
            continue
        if c.value == 0:
            continue
        table = best if c.value > 0 else worst
        prev = table.get(c.bonus_type)
        if prev is None or abs(c.value) > abs(contributions[prev].value):
            table[c.bonus_type] = idx
    chosen = set(best.values()) | set(worst.values()) | set(rolled.values())
    total = 0
    for idx, c in enumerate(contributions):
        if c.applied and c.bonus_type in TYPED_NO_STACK and (c.formula or c.value != 0):
            c.applied = idx in chosen
        if c.applied:
            total += c.value
    return math.floor(total)


class ModifiersEngine:
    """
    Merges bonuses into the state's stat lines under the stacking rule, keeping
    per-source provenance so every total can be explained.
    """

    def __init__(self, state: CharacterState, trace: Optional[TraceSession] = None):
        self.state = state
        self.trace = trace or TraceSession()

    def line(self, label: str) -> StatLine:
        key = label_key(label)
        line = self.state.labels.get(key)
        if line is None:
            line = StatLine(label=label)
            self.state.labels[key] = line
        return line

    def add(self, label: str, value: Value, *, source: str, source_name: str,
            bonus_type: str = "untyped") -> Contribution:
        c = Contribution(source=source, source_name=source_name, bonus_type=bonus_type)
        if isinstance(value, Symbolic):
            c.formula = value.text
        else:
            c.value = int(value) if float(value).is_integer() else value
        return self._merge(label, c)

    def add_error(self, label: str, error: str, *, source: str, source_name: str,
                  bonus_type: str = "untyped") -> Contribution:
        c = Contribution(source=source, source_name=source_name, bonus_type=bonus_type, error=error)
        return self._merge(label, c)

    def _merge(self, label: str, c: Contribution) -> Contribution:
        line = self.line(label)
        line.contributions.append(c)
        self.restack(line)
        shown = c.error and f"<<{c.error}>>" or c.formula or f"{c.value:+g}"
        self.trace.add(f"[Bonus] {line.label} {shown} ({c.bonus_type}) from {c.source_name} -> {line.display()}")
        return c

    @staticmethod
    def restack(line: StatLine) -> None:
        line.total = apply_stacking(line.contributions)
        line.formulas = [c.formula for c in line.contributions if c.formula and c.applied]

    def explain(self, label: str) -> List[str]:
        line = self.state.stat(label)
        if line is None:
            return []
        out = []
        for c in line.contributions:
            mark = "" if c.applied else " (not applied)"
            shown = c.error and f"<<{c.error}>>" or c.formula or f"{c.value:+g}"
            out.append(f"{shown} {c.bonus_type} from {c.source_name} [{c.source}]{mark}")
        return out

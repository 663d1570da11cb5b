from __future__ import annotations
import copy
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

from .advancement import split_param
from .choices import ResourceInstance
from .conditions_runtime import ConditionsEngine
from .errors import ExpressionError, UnresolvedChoice
from .expr import EvalContext, evaluate
from .modifiers_runtime import ModifiersEngine
from .schema_models import RANK_ORDER, Condition, Rank, effect_symbols, next_rank, substitute
from .state import CharacterState, Diagnostic, ItemState, ProficiencyEntry, label_key
from .trace import TraceSession

if TYPE_CHECKING:
    from .loader import Catalog

OutcomeKey = Tuple[str, int]  # (instance key, effect index; -1 = resource-level conditions)


@dataclass(frozen=True)
class GrantRequest:
    name: str
    kind: Optional[str] = None
    param: Optional[str] = None


class ConditionGate:
    """
    Evaluates effect conditions and remembers every outcome, so a finished pass
    can be re-checked against the final state. Outcomes in `fixed` come from a
    previous pass and override evaluation against the partial state.
    """

    def __init__(self, state: CharacterState, fixed: Optional[Mapping[OutcomeKey, bool]] = None):
        self.state = state
        self.fixed = dict(fixed or {})
        self.outcomes: Dict[OutcomeKey, Tuple[bool, Condition, Mapping[str, Any]]] = {}

    def holds(self, instance: ResourceInstance, index: int, cond: Optional[Condition]) -> bool:
        if cond is None:
            return True
        key = (instance.key, index)
        if key in self.fixed:
            result = self.fixed[key]
        else:
            result = ConditionsEngine(self.state, instance.bindings).check(cond)
        self.outcomes[key] = (result, cond, instance.bindings)
        return result

    def changed(self) -> Dict[OutcomeKey, bool]:
        out: Dict[OutcomeKey, bool] = {}
        for key, (result, cond, bindings) in self.outcomes.items():
            now = ConditionsEngine(self.state, bindings).check(cond)
            if now != result:
                out[key] = now
        return out


class EffectsEngine:
    """
    Applies one instance's effects, in declaration order, to the state accumulator.
    Grants are handed back to the caller's queue rather than expanded here.
    """

    def __init__(self, catalog: "Catalog", state: CharacterState, modifiers: ModifiersEngine,
                 trace: Optional[TraceSession] = None):
        self.catalog = catalog
        self.state = state
        self.modifiers = modifiers
        self.trace = trace or modifiers.trace

    def _diagnose(self, kind: str, message: str, instance: ResourceInstance) -> None:
        self.state.diagnostics.append(Diagnostic(kind=kind, message=message, instance=instance.key))

    # -------- materialization --------
    def materialize(self, inst: ResourceInstance) -> None:
        """Record what holding the resource itself means, before any of its effects."""
        d = inst.definition
        if d.synthetic:
            return
        self.state.granted.append(d.name)
        if d.kind == "item":
            self.state.items[label_key(d.name)] = ItemState(
                name=d.name, item_type=d.item_type or "gear", level=d.level, traits=list(d.traits),
                properties=copy.deepcopy(dict(d.properties)), source=inst.key)
            self.trace.add(f"[Item] {d.name} ({d.item_type or 'gear'})")
        elif d.kind == "action":
            if d.name not in self.state.actions:
                self.state.actions.append(d.name)
            self.trace.add(f"[Action] {d.name}")
        elif d.kind == "class" and d.progression is not None:
            self.modifiers.add("HP", d.progression.hp_per_level * self.state.level,
                               source=inst.key, source_name=d.name)

    # -------- effects --------
    def apply(self, inst: ResourceInstance, gate: ConditionGate,
              grant: Callable[[GrantRequest], None]) -> int:
        applied = 0
        name = inst.definition.name
        for idx, eff in enumerate(inst.definition.effects):
            try:
                inst.require(effect_symbols(eff))
            except UnresolvedChoice as e:
                self.trace.add(f"[Withheld] {eff.op} on {name}: {e}")
                continue
            if not gate.holds(inst, idx, eff.conditions):
                self.trace.add(f"[Skip] {eff.op} on {name}: conditions not met")
                continue
            self._apply(inst, eff, grant)
            applied += 1
        return applied

    def _apply(self, inst: ResourceInstance, eff, grant: Callable[[GrantRequest], None]) -> None:
        name = inst.definition.name
        if eff.op == "bonus":
            target = substitute(eff.target, inst.bindings)
            try:
                value = evaluate(eff.value, EvalContext(self.state.value_of, inst.bindings))
            except ExpressionError as e:
                self.modifiers.add_error(target, f"{type(e).__name__}: {e}", source=inst.key,
                                         source_name=name, bonus_type=eff.bonus_type)
                self._diagnose(type(e).__name__, f"{name} -> {target}: {e}", inst)
                return
            self.modifiers.add(target, value, source=inst.key, source_name=name, bonus_type=eff.bonus_type)
        elif eff.op == "grant":
            ref_name, param = split_param(substitute(eff.resource, inst.bindings))
            grant(GrantRequest(name=ref_name, kind=eff.kind, param=param))
        elif eff.op == "proficiency":
            self._bump(inst, substitute(eff.category, inst.bindings), eff.rank)
        elif eff.op == "add trait":
            item = self._item(inst, substitute(eff.target, inst.bindings))
            if item is not None and not item.has_trait(eff.trait):
                item.traits.append(eff.trait)
                self.trace.add(f"[Trait] {item.name} +{eff.trait}")
        elif eff.op == "modify item":
            item = self._item(inst, substitute(eff.target, inst.bindings))
            if item is None:
                return
            if eff.add is not None and eff.add not in item.qualities:
                item.qualities.append(eff.add)
            item.properties.update(copy.deepcopy(dict(eff.properties)))
            self.trace.add(f"[Item] {item.name} modified by {name}")
        elif eff.op == "focus pool":
            try:
                points = evaluate(eff.points, EvalContext(self.state.value_of, inst.bindings))
            except ExpressionError as e:
                self._diagnose(type(e).__name__, f"{name} -> Focus Points: {e}", inst)
                return
            self.modifiers.add("Focus Points", points, source=inst.key, source_name=name)
        elif eff.op == "gain spell":
            spell = substitute(eff.spell, inst.bindings)
            if spell not in self.state.spells:
                self.state.spells.append(spell)
            self.trace.add(f"[Spell] {spell} from {name}")
        else:
            raise AssertionError(f"unhandled effect variant '{eff.op}'")

    def _bump(self, inst: ResourceInstance, category: str, rank) -> None:
        key = label_key(category)
        entry = self.state.proficiencies.get(key)
        current = entry.rank if entry else Rank.UNTRAINED
        new = next_rank(current) if rank == "next" else Rank(rank)
        if RANK_ORDER[new] <= RANK_ORDER[current]:
            self.trace.add(f"[Proficiency] {category} stays {current.value} ({new.value} from {inst.definition.name})")
            return
        if entry is None:
            entry = ProficiencyEntry(category=category)
            self.state.proficiencies[key] = entry
        entry.rank = new
        entry.sources.append(inst.key)
        self.trace.add(f"[Proficiency] {category} -> {new.value} from {inst.definition.name}")

    def _item(self, inst: ResourceInstance, name: str) -> Optional[ItemState]:
        item = self.state.item(name)
        if item is None:
            self._diagnose("UnknownResource", f"{inst.definition.name} targets item '{name}', which is not granted", inst)
        return item

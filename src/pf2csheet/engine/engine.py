from __future__ import annotations
from collections import Counter, deque
from dataclasses import dataclass
import logging
from typing import Any, Deque, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .advancement import classify, selection_slot, split_param
from .choices import AnswerKey, ChoiceResolver, ResourceInstance
from .conditions_runtime import ConditionsEngine
from .effects_runtime import ConditionGate, EffectsEngine, GrantRequest, OutcomeKey
from .errors import CycleError
from .expr import EvalContext, render_template
from .loader import Catalog
from .modifiers_runtime import ModifiersEngine
from .prereq import unmet_prerequisite
from .schema_models import ResourceDefinition, name_key
from .settings import Settings
from .skills import ABILITIES, armor_category
from .state import CharacterState, Diagnostic, GrantedNode, InstanceStatus, ItemState, PendingChoice, label_key
from .trace import TraceSession

logger = logging.getLogger(__name__)


class Selections(BaseModel):
    """Everything a player decides; the only input worth persisting."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = "Unnamed"
    level: int = Field(default=1, ge=1, le=20)
    class_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("class", "class_name"))
    ancestry: Optional[str] = None
    background: Optional[str] = None
    armor: Optional[str] = None
    extra: List[str] = Field(default_factory=list)  # additional level-1 resources, e.g. house-rule feats
    answers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)  # instance key -> tag -> value

    def answer_map(self) -> Dict[AnswerKey, Any]:
        return {(key, tag): value for key, tags in self.answers.items() for tag, value in tags.items()}

    def with_answer(self, instance: str, tag: str, value: Any) -> "Selections":
        answers = {k: dict(v) for k, v in self.answers.items()}
        answers.setdefault(instance, {})[tag] = value
        return self.model_copy(update={"answers": answers})


@dataclass(frozen=True)
class _Queued:
    key: str
    name: str
    level: int
    definition: Optional[ResourceDefinition] = None
    kind: Optional[str] = None
    param: Optional[str] = None
    parent: Optional[int] = None
    visited: FrozenSet[Tuple[str, str]] = frozenset()


def _unique(base: str, seen: Counter) -> str:
    """Instance keys repeat only as base, base#2, base#3 ..."""
    seen[base] += 1
    return base if seen[base] == 1 else f"{base}#{seen[base]}"


class ResolutionEngine:
    """
    Builds a character from scratch: per level, every scheduled resource becomes an
    instance, its choices are bound, and its effects are applied in ascending
    level order. A resolve() call never shares state with another.
    """

    def __init__(self, catalog: Catalog, selections: Selections, *, level: Optional[int] = None,
                 answers: Optional[Mapping[AnswerKey, Any]] = None, settings: Optional[Settings] = None):
        self.catalog = catalog
        self.selections = selections
        self.level = level or selections.level
        self.settings = settings or Settings()
        merged = selections.answer_map()
        merged.update(answers or {})
        if selections.ancestry:
            merged.setdefault(("L1/ancestry", "ancestry"), selections.ancestry)
        if selections.background:
            merged.setdefault(("L1/background", "background"), selections.background)
        self.answers: Dict[AnswerKey, Any] = merged

    # -------- public --------
    def resolve(self) -> CharacterState:
        fixed: Dict[OutcomeKey, bool] = {}
        for attempt in range(1, self.settings.max_settle_passes + 1):
            state, changed = self._pass(fixed)
            if not changed:
                return state
            logger.debug("pass %d: %d condition outcome(s) changed, rebuilding", attempt, len(changed))
            fixed.update(changed)
        state.diagnostics.append(Diagnostic(
            kind="Unsettled",
            message=f"conditions still changing after {self.settings.max_settle_passes} passes"))
        return state

    # -------- one pass --------
    def _pass(self, fixed: Mapping[OutcomeKey, bool]) -> Tuple[CharacterState, Dict[OutcomeKey, bool]]:
        sel = self.selections
        self.state = state = CharacterState(
            name=sel.name, level=self.level, class_name=sel.class_name, ancestry=sel.ancestry,
            background=sel.background, focus_point_cap=self.settings.max_focus_points)
        self.trace = TraceSession()
        self.modifiers = ModifiersEngine(state, self.trace)
        self.effects = EffectsEngine(self.catalog, state, self.modifiers, self.trace)
        self.gate = ConditionGate(state, fixed)
        self.resolver = ChoiceResolver(self.catalog, self.answers)
        self._arena: List[ResourceInstance] = []
        self._nodes: List[Dict[str, Any]] = []
        self._roots: List[int] = []
        self._identities: Set[Any] = set()

        for ability in ABILITIES:
            self.modifiers.add(ability, self.settings.base_ability_score, source="base", source_name="base score")
        self._wear_armor()
        class_def = self._class_definition()

        for lvl in range(1, self.level + 1):
            self.trace.level = lvl
            queue: Deque[_Queued] = deque()
            seen: Counter = Counter()
            if lvl == 1:
                if class_def is not None:
                    queue.append(_Queued(key="class", name=class_def.name, level=1, definition=class_def))
                for ref in sel.extra:
                    name, param = split_param(ref)
                    key = _unique(f"extra/{name_key(name)}", seen)
                    queue.append(_Queued(key=key, name=name, level=1, param=param))
            for entry in self._level_entries(class_def, lvl):
                queued = self._schedule(entry, lvl, class_def, seen)
                if queued is not None:
                    queue.append(queued)
            while queue:
                self._process(queue.popleft(), queue)
        self.trace.level = 0

        changed = self.gate.changed()
        by_key = {n["instance"].key: n for n in reversed(self._nodes)}
        for key in sorted({k for k, _ in changed}):
            node = by_key[key]
            node["status"] = InstanceStatus.INVALIDATED
            state.diagnostics.append(Diagnostic(
                kind="Invalidated", instance=key,
                message=f"{node['instance'].definition.name}: a condition changed later in the build"))
        self._finish()
        return state, changed

    def _class_definition(self) -> Optional[ResourceDefinition]:
        name = self.selections.class_name
        if not name:
            self.state.pending.append(PendingChoice(instance="character", resource="character", label="Class",
                                                    tag="class", kind="resource", options={"type": "class"}))
            return None
        found = self.catalog.get("class", name)
        if found is None:
            self._diagnose("UnknownResource", f"class '{name}' is not in the catalog", "class")
        return found

    def _wear_armor(self) -> None:
        name = self.selections.armor
        if not name:
            return
        item = self.catalog.get("item", name)
        if item is None or item.item_type != "armor":
            self._diagnose("UnknownResource", f"'{name}' is not an armor in the catalog", "armor")
            return
        self.state.armor_category = armor_category(str(item.properties.get("category", "light")))
        self.state.items[label_key(item.name)] = ItemState(
            name=item.name, item_type="armor", level=item.level, traits=list(item.traits),
            properties=dict(item.properties), source="armor")
        if "ac bonus" in item.properties:
            self.modifiers.add("AC", int(item.properties["ac bonus"]), source="armor", source_name=item.name,
                               bonus_type="item")

    @staticmethod
    def _level_entries(class_def: Optional[ResourceDefinition], lvl: int) -> List[str]:
        entries = list(class_def.progression.advancement.get(lvl, [])) if class_def else []
        if lvl == 1:
            # ancestry and background are always chosen at level 1, scheduled or not
            lowered = [e.strip().lower() for e in entries]
            for slot in ("background", "ancestry"):
                if slot not in lowered:
                    entries.insert(0, slot)
        return entries

    def _schedule(self, entry: str, lvl: int, class_def: Optional[ResourceDefinition],
                  seen: Counter) -> Optional[_Queued]:
        name, _ = split_param(entry)
        key = _unique(f"L{lvl}/{name_key(name)}", seen)
        if class_def is not None:
            found = classify(entry, class_def, self.catalog, ancestry=self.selections.ancestry)
        elif name_key(name) in ("ancestry", "background"):
            found = selection_slot(name_key(name)), None
        else:
            found = None
        if found is None:
            self._diagnose("UnknownAdvancement", f"level {lvl} entry '{entry}' matches no class feature", key)
            return None
        definition, param = found
        return _Queued(key=key, name=definition.name, level=lvl, definition=definition, param=param)

    # -------- instances --------
    def _process(self, q: _Queued, queue: Deque[_Queued]) -> None:
        definition = q.definition or self.catalog.find(q.name, q.kind)
        if definition is None:
            self._diagnose("UnknownResource", f"no {q.kind or 'resource'} named '{q.name}'", q.key)
            return
        if definition.key in q.visited:
            # static check in _grant should have caught this; parameterized grants can still get here
            self._report_cycle(CycleError([*(n for _, n in sorted(q.visited)), definition.name]), q.key)
            return

        instance = ResourceInstance(key=q.key, definition=definition, level=q.level, parent=q.parent,
                                    bindings=self._param_binding(definition, q))
        instance, pending, problems = self.resolver.resolve(instance, self.state)

        # identity is only known once every required choice is answered
        if not definition.synthetic and not pending:
            if instance.identity in self._identities:
                idx = self._add_node(instance, InstanceStatus.REMOVED)
                self._nodes[idx]["warnings"].append("already granted with the same choices")
                self._diagnose("DuplicateResource", f"{definition.name} is already granted with the same choices",
                               q.key)
                return
            self._identities.add(instance.identity)
        idx = self._add_node(instance, InstanceStatus.UNRESOLVED)
        node = self._nodes[idx]
        self.state.pending.extend(pending)
        for problem in problems:
            node["warnings"].append(problem)
            self._diagnose("InvalidAnswer", f"{definition.name}: {problem}", q.key)

        warning = unmet_prerequisite(definition, ConditionsEngine(self.state, instance.bindings), q.level)
        if warning:
            node["warnings"].append(warning)
            self._diagnose("UnmetPrerequisite", warning, q.key)

        if not self.gate.holds(instance, -1, definition.conditions):
            node["status"] = InstanceStatus.INVALIDATED
            node["warnings"].append("conditions not met; effects not applied")
            self.trace.add(f"[Invalidated] {definition.name}")
            return

        self.effects.materialize(instance)
        if not definition.synthetic:
            self.trace.add(f"[Grant] {definition.kind} {definition.name} ({q.key})")
        self.effects.apply(instance, self.gate, lambda req: self._grant(instance, idx, q, req, queue))
        node["status"] = InstanceStatus.UNRESOLVED if pending else InstanceStatus.RESOLVED

    def _param_binding(self, definition: ResourceDefinition, q: _Queued) -> Dict[str, Any]:
        if q.param is None:
            return {}
        slots = definition.slots
        modifier_tags = [name.lstrip("$") for name in definition.modifiers]
        if len(modifier_tags) == 1:
            return {modifier_tags[0]: q.param}
        if len(slots) == 1:
            return {slots[0].tag: q.param}
        self._diagnose("InvalidAnswer", f"{definition.name}: nowhere to bind parameter '{q.param}'", q.key)
        return {}

    def _grant(self, parent: ResourceInstance, parent_idx: int, q: _Queued, req: GrantRequest,
               queue: Deque[_Queued]) -> None:
        target = self.catalog.find(req.name, req.kind)
        if target is None:
            self._diagnose("UnknownResource",
                           f"{parent.definition.name} grants unknown {req.kind or 'resource'} '{req.name}'", parent.key)
            return
        ancestors = q.visited | {parent.definition.key}
        try:
            self._check_cycle(target, ancestors, parent.definition.name)
        except CycleError as e:
            self._nodes[parent_idx]["warnings"].append(str(e))
            self._report_cycle(e, parent.key)
            return
        key = _unique(f"{parent.key}/{target.name}", self._nodes[parent_idx]["granted"])
        queue.append(_Queued(key=key, name=target.name, level=q.level,
                             definition=target, param=req.param, parent=parent_idx, visited=ancestors))

    def _check_cycle(self, target: ResourceDefinition, ancestors: FrozenSet[Tuple[str, str]], origin: str) -> None:
        """Walk the target's static grants; reaching an ancestor means the grant would loop."""
        stack = [(target, [target.name])]
        seen: Set[Tuple[str, str]] = set()
        while stack:
            d, path = stack.pop()
            if d.key in ancestors:
                raise CycleError([origin, *path])
            if d.key in seen:
                continue
            seen.add(d.key)
            for eff in d.effects:
                if eff.op == "grant" and "$" not in eff.resource:
                    child = self.catalog.find(split_param(eff.resource)[0], eff.kind)
                    if child is not None:
                        stack.append((child, [*path, child.name]))

    def _report_cycle(self, error: CycleError, instance: str) -> None:
        logger.warning("%s (at %s)", error, instance)
        self.trace.add(f"[Cycle] {error}")
        self._diagnose("CycleError", str(error), instance)

    def _add_node(self, instance: ResourceInstance, status: InstanceStatus) -> int:
        idx = len(self._arena)
        self._arena.append(instance)
        self._nodes.append({"instance": instance, "status": status, "warnings": [], "children": [],
                            "granted": Counter()})
        if instance.parent is None:
            self._roots.append(idx)
        else:
            self._nodes[instance.parent]["children"].append(idx)
        return idx

    def _diagnose(self, kind: str, message: str, instance: Optional[str]) -> None:
        self.state.diagnostics.append(Diagnostic(kind=kind, message=message, instance=instance))

    # -------- snapshot --------
    def _finish(self) -> None:
        def build(idx: int) -> GrantedNode:
            node = self._nodes[idx]
            inst: ResourceInstance = node["instance"]
            d = inst.definition
            return GrantedNode(
                key=inst.key, kind=d.kind, name=d.name, level=inst.level, status=node["status"],
                bindings=dict(inst.bindings),
                description=render_template(d.description, EvalContext(self.state.value_of, inst.bindings)),
                warnings=list(node["warnings"]),
                children=[build(child) for child in node["children"]],
            )
        self.state.tree = [build(idx) for idx in self._roots]
        self.state.log = self.trace.dump()


def resolve_character(catalog: Catalog, selections: Selections, level: Optional[int] = None,
                      answers: Optional[Mapping[AnswerKey, Any]] = None,
                      settings: Optional[Settings] = None) -> CharacterState:
    """(catalog, selections, level, choice answers) -> a brand-new CharacterState."""
    return ResolutionEngine(catalog, selections, level=level, answers=answers, settings=settings).resolve()

from __future__ import annotations
from dataclasses import dataclass, field, replace
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import UnresolvedChoice
from .schema_models import RANK_ORDER, ChoiceSlot, Rank, ResourceDefinition
from .skills import TRADITIONS, lore, normalize_ability, normalize_save, normalize_skill, parse_quantity
from .state import CharacterState, PendingChoice

if TYPE_CHECKING:
    from .loader import Catalog

logger = logging.getLogger(__name__)

AnswerKey = Tuple[str, str]  # (instance key, slot tag)


def _frozen(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class ResourceInstance:
    """
    A definition bound to a granting level and its choice answers.
    Instances are never changed after binding; any edit rebuilds the tree.
    """
    key: str
    definition: ResourceDefinition
    level: int
    bindings: Mapping[str, Any] = field(default_factory=_frozen)
    parent: Optional[int] = None

    @property
    def identity(self) -> Tuple[Tuple[str, str], Tuple[Tuple[str, str], ...]]:
        return self.definition.key, tuple(sorted((k, str(v)) for k, v in self.bindings.items()))

    def with_bindings(self, values: Mapping[str, Any]) -> "ResourceInstance":
        merged = dict(self.bindings)
        merged.update(values)
        return replace(self, bindings=_frozen(merged))

    def require(self, tags: Iterable[str]) -> None:
        for tag in sorted(tags):
            if tag not in self.bindings:
                raise UnresolvedChoice(self.key, tag)


class ChoiceResolver:
    """Binds externally supplied answers to an instance's open slots. Never infers an answer."""

    def __init__(self, catalog: "Catalog", answers: Mapping[AnswerKey, Any]):
        self.catalog = catalog
        self.answers = answers

    def resolve(self, instance: ResourceInstance, state: CharacterState
                ) -> Tuple[ResourceInstance, List[PendingChoice], List[str]]:
        """Returns (bound instance, pending choices, problems with supplied answers)."""
        bound: Dict[str, Any] = {}
        pending: List[PendingChoice] = []
        problems: List[str] = []
        distinct_seen: List[Any] = []
        for slot in instance.definition.slots:
            if slot.tag in instance.bindings:
                raw = instance.bindings[slot.tag]
            elif (instance.key, slot.tag) in self.answers:
                raw = self.answers[(instance.key, slot.tag)]
            else:
                if not slot.optional:
                    pending.append(self._pending(instance, slot))
                continue
            value, problem = self.validate(slot, raw, state)
            if problem is None and slot.options.get("distinct"):
                if value in distinct_seen:
                    problem = f"'{value}' was already chosen for {instance.definition.name}"
                distinct_seen.append(value)
            if problem is not None:
                problems.append(f"${slot.tag}: {problem}")
                if not slot.optional:
                    pending.append(self._pending(instance, slot))
                continue
            bound[slot.tag] = value
        if problems:
            logger.debug("answers rejected on %s: %s", instance.key, problems)
        return instance.with_bindings(bound), pending, problems

    @staticmethod
    def _pending(instance: ResourceInstance, slot: ChoiceSlot) -> PendingChoice:
        return PendingChoice(instance=instance.key, resource=instance.definition.name, label=slot.label,
                             tag=slot.tag, kind=slot.kind, options=dict(slot.options))

    def _resource(self, kind: Optional[str], text: str, slot: ChoiceSlot) -> Tuple[Any, Optional[str]]:
        found = self.catalog.find(text, kind)
        if found is None:
            return None, f"no {kind or 'resource'} named '{text}'"
        categories = slot.options.get("categories") or []
        if categories and not any(found.has_tag(c) for c in categories):
            return None, f"{found.name} is not a {'/'.join(categories)} {kind or 'resource'}"
        traits = slot.options.get("traits") or []
        trait = slot.options.get("trait")
        if trait:
            traits = [*traits, trait]
        if traits and not any(found.has_tag(t) for t in traits):
            return None, f"{found.name} lacks the {'/'.join(traits)} trait"
        return found.name, None

    def validate(self, slot: ChoiceSlot, raw: Any, state: CharacterState) -> Tuple[Any, Optional[str]]:
        """Normalize one answer for its slot's constraint; (value, None) or (None, problem)."""
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None, "empty answer"
        text = str(raw).strip()
        kind = slot.kind
        opts = slot.options
        if kind == "feat":
            return self._resource("feat", text, slot)
        if kind in ("ancestry", "background"):
            return self._resource(kind, text, slot)
        if kind == "resource":
            return self._resource(opts.get("type"), text, slot)
        if kind == "skill":
            skill = normalize_skill(text)
            if skill is None:
                return None, f"'{text}' is not a skill"
            current = state.rank(skill)
            minimum = opts.get("min_proficiency")
            if minimum and RANK_ORDER[current] < RANK_ORDER[Rank(str(minimum).lower())]:
                return None, f"{skill} must be at least {str(minimum).lower()} (is {current.value})"
            if opts.get("untrained_only") and current != Rank.UNTRAINED:
                return None, f"{skill} is already {current.value}"
            return skill, None
        if kind == "lore topic":
            topic = text.lower()
            if opts.get("only_new") and state.rank(lore(topic)) != Rank.UNTRAINED:
                return None, f"already trained in {lore(topic)}"
            return topic, None
        if kind == "saving throw":
            save = normalize_save(text)
            return (save, None) if save else (None, f"'{text}' is not a saving throw")
        if kind == "ability":
            ability = normalize_ability(text)
            if ability is None:
                return None, f"'{text}' is not an ability"
            allowed = [normalize_ability(a) for a in opts.get("choices") or []]
            if allowed and ability not in allowed:
                return None, f"{ability} is not one of {allowed}"
            return ability, None
        if kind == "distance":
            quantity = raw if isinstance(raw, int) and not isinstance(raw, bool) else parse_quantity(text)
            return (quantity, None) if quantity is not None else (None, f"'{text}' is not a distance")
        if kind == "spell tradition":
            tradition = text.lower()
            return (tradition, None) if tradition in TRADITIONS else (None, f"'{text}' is not a spell tradition")
        # item formula, text
        return text, None

from __future__ import annotations
import logging
from typing import Any, Mapping, Optional

from .schema_models import RANK_ORDER, Condition, Rank, substitute
from .skills import SKILLS, armor_category
from .state import CharacterState, label_key

logger = logging.getLogger(__name__)

# Categories that stand for "any of several" in prerequisite text
_ANY_SKILL = {"at least one skill", "any skill", "a skill"}


class ConditionsEngine:
    """
    Evaluates Condition predicates against the in-progress state, reading `$tag`
    references from one instance's binding environment.
    """

    def __init__(self, state: CharacterState, bindings: Optional[Mapping[str, Any]] = None):
        self.state = state
        self.bindings = bindings or {}

    def _subst(self, text: str) -> str:
        return substitute(text, self.bindings)

    def rank_of(self, category: str) -> Rank:
        key = label_key(self._subst(category))
        if key in _ANY_SKILL:
            ranks = [e.rank for k, e in self.state.proficiencies.items() if k in SKILLS or k.startswith("lore (")]
        elif key == "lore":
            ranks = [e.rank for k, e in self.state.proficiencies.items() if k.startswith("lore (")]
        else:
            return self.state.rank(key)
        return max(ranks, key=RANK_ORDER.get) if ranks else Rank.UNTRAINED

    @staticmethod
    def _compare(rank: Rank, at_least: Optional[Rank], exact: Optional[Rank]) -> bool:
        if exact is not None:
            return rank == exact
        return RANK_ORDER[rank] >= RANK_ORDER[at_least]

    def check(self, cond: Optional[Condition]) -> bool:
        if cond is None:
            return True
        results = []
        if cond.armor_category is not None:
            results.append(armor_category(self.state.armor_category) == armor_category(cond.armor_category))
        if cond.proficiency is not None:
            p = cond.proficiency
            results.append(self._compare(self.rank_of(p.category), p.at_least, p.exact))
        if cond.weapon_proficiency is not None:
            w = cond.weapon_proficiency
            rank = self.rank_of(w.category) if w.category else self.state.best_weapon_rank()
            results.append(self._compare(rank, w.at_least, w.exact))
        if cond.item_trait is not None:
            t = cond.item_trait
            items = [self.state.item(self._subst(t.item))] if t.item else list(self.state.items.values())
            results.append(any(i is not None and i.has_trait(t.trait) for i in items))
        if cond.have_resource is not None:
            results.append(self.state.has_resource(self._subst(cond.have_resource)))
        if cond.unenforced is not None:
            logger.debug("unenforced condition: %s", cond.unenforced)
            results.append(True)
        if cond.not_ is not None:
            results.append(not self.check(cond.not_))
        if cond.any_of:
            results.append(any(self.check(c) for c in cond.any_of))
        if cond.all_of:
            results.append(all(self.check(c) for c in cond.all_of))
        return all(results)

    def describe(self, cond: Optional[Condition]) -> str:
        if cond is None:
            return "always"
        return ", ".join(f"{k}={v}" for k, v in cond.model_dump(exclude_defaults=True).items())

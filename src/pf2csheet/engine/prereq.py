from __future__ import annotations
import re
from typing import Optional

from .conditions_runtime import ConditionsEngine
from .schema_models import Condition, ProficiencyCondition, ResourceDefinition

# "trained in Acrobatics", "expert in at least one skill"; one clause, no conjunctions
_RANK_IN_RE = re.compile(r"^\s*(trained|expert|master|legendary)\s+in\s+([^,;]+?)\s*$", re.I)


def prerequisite_condition(definition: ResourceDefinition) -> Optional[Condition]:
    """
    The machine-checkable part of a definition's prerequisites: its explicit
    `requires` predicate, else a proficiency clause read from the free text.
    Text the reader does not understand is left unenforced.
    """
    if definition.requires is not None:
        return definition.requires
    if not definition.prereqs:
        return None
    m = _RANK_IN_RE.match(definition.prereqs)
    if not m:
        return None
    return Condition(proficiency=ProficiencyCondition(category=m.group(2), at_least=m.group(1).lower()))


def unmet_prerequisite(definition: ResourceDefinition, conditions: ConditionsEngine,
                       granting_level: int) -> Optional[str]:
    """Warning text when the definition's level or prerequisites are not met, else None."""
    if definition.level > granting_level and definition.kind == "feat":
        return f"{definition.name} is a level {definition.level} feat, taken at level {granting_level}"
    cond = prerequisite_condition(definition)
    if cond is None or conditions.check(cond):
        return None
    shown = definition.prereqs or conditions.describe(cond)
    return f"{definition.name}: prerequisite not met ({shown})"

from __future__ import annotations
import re
from typing import TYPE_CHECKING, List, Optional, Tuple

from .schema_models import (
    BonusEffect, ChoiceSlot, GrantEffect, ProficiencyEffect, Rank, ResourceDefinition,
)
from .skills import armor_category, normalize_skill, weapon_category

if TYPE_CHECKING:
    from .loader import Catalog

_FEAT_SLOT_RE = re.compile(r"^(?P<category>.+?)\s+feat$", re.I)
_PARAM_RE = re.compile(r"^(?P<name>.*?)\s*\((?P<param>[^()]*)\)\s*$")

# Schedule entries that open a slot instead of naming a class feature
PLACEHOLDERS = ("ancestry", "background", "initial proficiencies", "ability boosts", "skill increase")


def split_param(ref: str) -> Tuple[str, Optional[str]]:
    """'incredible movement (+10 ft)' -> ('incredible movement', '+10 ft')"""
    m = _PARAM_RE.match(ref.strip())
    if not m or not m.group("name"):
        return ref.strip(), None
    return m.group("name"), m.group("param").strip()


def feat_slot(category: str, traits: Optional[List[str]] = None) -> ResourceDefinition:
    title = category.strip().title()
    options = {"categories": [title]}
    if traits:
        options["traits"] = list(traits)
    return ResourceDefinition(
        kind="class feature", name=f"{category.strip().lower()} feat", synthetic=True,
        description=f"Choose a {title} feat.",
        questions=[ChoiceSlot(label=f"{title} feat", tag="feat", kind="feat", options=options)],
        effects=[GrantEffect(resource="$feat", kind="feat")],
    )


def selection_slot(kind: str) -> ResourceDefinition:
    return ResourceDefinition(
        kind="class feature", name=kind, synthetic=True,
        questions=[ChoiceSlot(label=kind.title(), tag=kind, kind=kind)],
        effects=[GrantEffect(resource=f"${kind}", kind=kind)],
    )


def ability_boosts_slot(count: int = 4) -> ResourceDefinition:
    tags = [f"boost_{i}" for i in range(1, count + 1)]
    return ResourceDefinition(
        kind="class feature", name="ability boosts", synthetic=True,
        description=f"Boost {count} different ability scores by 2.",
        questions=[ChoiceSlot(label=f"Ability boost {i}", tag=t, kind="ability", options={"distinct": True})
                   for i, t in enumerate(tags, 1)],
        effects=[BonusEffect(target=f"${t}", value=2) for t in tags],
    )


def skill_increase_slot() -> ResourceDefinition:
    return ResourceDefinition(
        kind="class feature", name="skill increase", synthetic=True,
        description="Increase your proficiency rank in one skill by one step.",
        questions=[ChoiceSlot(label="Skill increase", tag="skill", kind="skill",
                              options={"min_proficiency": "trained"})],
        effects=[ProficiencyEffect(category="$skill", rank="next")],
    )


def initial_proficiencies(class_def: ResourceDefinition) -> ResourceDefinition:
    p = class_def.progression
    effects = [
        ProficiencyEffect(category="perception", rank=p.perception),
        ProficiencyEffect(category="fortitude", rank=p.fort_save),
        ProficiencyEffect(category="reflex", rank=p.reflex_save),
        ProficiencyEffect(category="will", rank=p.will_save),
    ]
    effects += [ProficiencyEffect(category=weapon_category(k), rank=r) for k, r in p.weapon_proficiencies.items()]
    effects += [ProficiencyEffect(category=armor_category(k), rank=r) for k, r in p.armor_proficiencies.items()]
    effects.append(ProficiencyEffect(category=f"{class_def.name} class DC", rank=Rank.TRAINED))
    effects += [ProficiencyEffect(category=normalize_skill(s) or s.lower(), rank=Rank.TRAINED)
                for s in p.trained_skills]
    questions = []
    for i in range(1, p.free_skill_trained + 1):
        questions.append(ChoiceSlot(label=f"Trained skill {i}", tag=f"skill_{i}", kind="skill",
                                    options={"untrained_only": True, "distinct": True}))
        effects.append(ProficiencyEffect(category=f"$skill_{i}", rank=Rank.TRAINED))
    return ResourceDefinition(
        kind="class feature", name="initial proficiencies", synthetic=True,
        description=f"Starting proficiencies of the {class_def.name}.",
        questions=questions, effects=effects,
    )


def classify(entry: str, class_def: ResourceDefinition, catalog: "Catalog",
             ancestry: Optional[str] = None) -> Optional[Tuple[ResourceDefinition, Optional[str]]]:
    """
    Turn one advancement schedule entry into (definition, parameter): a class
    feature from the catalog, or a synthetic placeholder slot. None if unknown.
    """
    name, param = split_param(entry)
    feature = catalog.get("class feature", name)
    if feature is not None:
        return feature, param
    key = " ".join(name.split()).lower()
    if key == "initial proficiencies":
        return initial_proficiencies(class_def), None
    if key in ("ancestry", "background"):
        return selection_slot(key), None
    if key in ("ability boosts", "ability boost"):
        count = int(param) if param and param.isdigit() else 4
        return ability_boosts_slot(count), None
    if key == "skill increase":
        return skill_increase_slot(), None
    m = _FEAT_SLOT_RE.match(key)
    if m:
        category = m.group("category")
        traits = [ancestry] if category == "ancestry" and ancestry else None
        return feat_slot(category, traits), None
    return None

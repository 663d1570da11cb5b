from __future__ import annotations
from enum import Enum
import re
from typing import Any, Dict, List, Literal, Mapping, Optional, Set, Tuple, Union
from typing_extensions import Annotated
from pydantic import (
    AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator,
)

# Common aliases
Expr = Union[str, int, float]  # expressions or numeric literals

# Enums
ResourceKind = Literal["class", "class feature", "feat", "action", "item", "ancestry", "background"]
BonusType = Literal["circumstance", "item", "proficiency", "status", "untyped"]
ChoiceKind = Literal[
    "skill", "lore topic", "feat", "item formula", "ancestry", "background", "saving throw",
    "distance", "spell tradition", "ability", "resource", "text",
]
ItemType = Literal["weapon", "armor", "shield", "gear"]

RESOURCE_KINDS: Tuple[str, ...] = ("class", "class feature", "feat", "action", "item", "ancestry", "background")


def name_key(name: str) -> str:
    return " ".join(name.split()).casefold()


_SYMBOL_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def substitute(text: str, bindings: Mapping[str, Any]) -> str:
    """Replace every bound `$tag` in a reference string; unbound ones stay as written."""
    return _SYMBOL_RE.sub(lambda m: str(bindings.get(m.group(1), m.group(0))), text)


class Rank(str, Enum):
    UNTRAINED = "untrained"
    TRAINED = "trained"
    EXPERT = "expert"
    MASTER = "master"
    LEGENDARY = "legendary"


RANK_ORDER: Dict[Rank, int] = {
    Rank.UNTRAINED: 0, Rank.TRAINED: 1, Rank.EXPERT: 2, Rank.MASTER: 3, Rank.LEGENDARY: 4,
}
RANK_BONUS: Dict[Rank, int] = {
    Rank.UNTRAINED: 0, Rank.TRAINED: 2, Rank.EXPERT: 4, Rank.MASTER: 6, Rank.LEGENDARY: 8,
}
RANKS_BY_ORDER: List[Rank] = sorted(RANK_ORDER, key=RANK_ORDER.get)


def proficiency_bonus(rank: Rank, level: int) -> int:
    if rank == Rank.UNTRAINED:
        return 0
    return level + RANK_BONUS[rank]


def next_rank(rank: Rank) -> Rank:
    return RANKS_BY_ORDER[min(RANK_ORDER[rank] + 1, len(RANKS_BY_ORDER) - 1)]


def _coerce_rank(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


RankField = Annotated[Rank, BeforeValidator(_coerce_rank)]


def symbols_in(data: Any) -> Set[str]:
    """All `$tag` names referenced anywhere in a (dumped) structure."""
    found: Set[str] = set()
    if isinstance(data, str):
        found.update(_SYMBOL_RE.findall(data))
    elif isinstance(data, dict):
        for v in data.values():
            found |= symbols_in(v)
    elif isinstance(data, (list, tuple)):
        for v in data:
            found |= symbols_in(v)
    return found


class _Definition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


# -----------------------------
# Conditions
# -----------------------------

class ProficiencyCondition(_Definition):
    category: str = Field(validation_alias=AliasChoices("in", "category"))
    at_least: Optional[RankField] = Field(default=None, validation_alias=AliasChoices("at least", "at_least"))
    exact: Optional[RankField] = None

    @model_validator(mode="after")
    def _one_comparison(self):
        if (self.at_least is None) == (self.exact is None):
            raise ValueError("proficiency condition needs exactly one of 'at least' / 'exact'")
        return self


class WeaponProficiencyCondition(_Definition):
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("in", "category"))
    at_least: Optional[RankField] = Field(default=None, validation_alias=AliasChoices("at least", "at_least"))
    exact: Optional[RankField] = None

    @model_validator(mode="after")
    def _one_comparison(self):
        if (self.at_least is None) == (self.exact is None):
            raise ValueError("weapon proficiency condition needs exactly one of 'at least' / 'exact'")
        return self


class ItemTraitCondition(_Definition):
    trait: str
    item: Optional[str] = None


class Condition(_Definition):
    armor_category: Optional[str] = Field(default=None, validation_alias=AliasChoices("armor category", "armor_category"))
    proficiency: Optional[ProficiencyCondition] = None
    weapon_proficiency: Optional[WeaponProficiencyCondition] = Field(
        default=None, validation_alias=AliasChoices("weapon proficiency", "weapon_proficiency"))
    item_trait: Optional[ItemTraitCondition] = Field(default=None, validation_alias=AliasChoices("item trait", "item_trait"))
    have_resource: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("have resource", "have feat", "have_resource"))
    unenforced: Optional[str] = None
    not_: Optional["Condition"] = Field(default=None, validation_alias=AliasChoices("NOT", "not", "not_"))
    any_of: List["Condition"] = Field(default_factory=list, validation_alias=AliasChoices("OR", "or", "any_of"))
    all_of: List["Condition"] = Field(default_factory=list, validation_alias=AliasChoices("AND", "and", "all_of"))

    @field_validator("item_trait", mode="before")
    @classmethod
    def _trait_shorthand(cls, v):
        return {"trait": v} if isinstance(v, str) else v

    @model_validator(mode="after")
    def _non_empty(self):
        if not any([self.armor_category, self.proficiency, self.weapon_proficiency, self.item_trait,
                    self.have_resource, self.unenforced is not None, self.not_, self.any_of, self.all_of]):
            raise ValueError("empty condition")
        return self


Condition.model_rebuild()


# -----------------------------
# Effects (closed set, discriminated by 'op')
# -----------------------------

class BonusEffect(_Definition):
    op: Literal["bonus"] = "bonus"
    bonus_type: BonusType = Field(default="untyped", validation_alias=AliasChoices("type", "bonus_type"))
    target: str = Field(validation_alias=AliasChoices("to", "target"))
    value: Expr
    conditions: Optional[Condition] = None

    @field_validator("bonus_type", mode="before")
    @classmethod
    def _lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class GrantEffect(_Definition):
    op: Literal["grant"] = "grant"
    resource: str = Field(validation_alias=AliasChoices("resource", "name"))
    kind: Optional[ResourceKind] = None
    conditions: Optional[Condition] = None


class ProficiencyEffect(_Definition):
    op: Literal["proficiency"] = "proficiency"
    category: str = Field(validation_alias=AliasChoices("in", "category"))
    rank: Union[Literal["next"], Rank] = Field(
        validation_alias=AliasChoices("increase to", "increases to", "rank"))
    conditions: Optional[Condition] = None

    @field_validator("rank", mode="before")
    @classmethod
    def _lower_rank(cls, v):
        return _coerce_rank(v)


class TraitAddEffect(_Definition):
    op: Literal["add trait"] = "add trait"
    target: str = Field(validation_alias=AliasChoices("to", "target"))
    trait: str
    conditions: Optional[Condition] = None


class ItemModifyEffect(_Definition):
    op: Literal["modify item"] = "modify item"
    target: str = Field(validation_alias=AliasChoices("name", "to", "target"))
    add: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("set", "properties"))
    conditions: Optional[Condition] = None

    @model_validator(mode="after")
    def _has_change(self):
        if self.add is None and not self.properties:
            raise ValueError("modify item needs 'add' and/or 'set'")
        return self


class FocusPoolEffect(_Definition):
    op: Literal["focus pool"] = "focus pool"
    points: Expr = 1
    conditions: Optional[Condition] = None


class SpellGrantEffect(_Definition):
    op: Literal["gain spell"] = "gain spell"
    spell: str = Field(validation_alias=AliasChoices("spell", "name"))
    conditions: Optional[Condition] = None


Effect = Annotated[
    Union[BonusEffect, GrantEffect, ProficiencyEffect, TraitAddEffect, ItemModifyEffect,
          FocusPoolEffect, SpellGrantEffect],
    Field(discriminator="op"),
]


def effect_symbols(effect: BaseModel) -> Set[str]:
    return symbols_in(effect.model_dump(exclude={"op"}))


# -----------------------------
# Choices
# -----------------------------

_SLOT_KEYS = {"label", "tag", "optional", "kind", "options"}


class ChoiceSlot(_Definition):
    label: str
    tag: str
    kind: ChoiceKind
    options: Dict[str, Any] = Field(default_factory=dict)
    optional: bool = False

    @model_validator(mode="before")
    @classmethod
    def _lift_constraint(cls, data):
        # document form: {label, tag, <constraint kind>: <options>}
        if not isinstance(data, dict) or "kind" in data:
            return data
        constraint = [k for k in data if k not in _SLOT_KEYS]
        if len(constraint) != 1:
            raise ValueError(f"choice '{data.get('label')}' needs exactly one constraint, got {constraint}")
        key = constraint[0]
        opts = data[key]
        if isinstance(opts, list):
            opts = {"categories": opts}
        elif not isinstance(opts, dict):
            opts = {} if opts is None else {"value": opts}
        out = {k: v for k, v in data.items() if k in _SLOT_KEYS}
        out["kind"] = key.replace("_", " ")
        out["options"] = opts
        return out

    @field_validator("tag", mode="before")
    @classmethod
    def _strip_sigil(cls, v):
        return v.lstrip("$") if isinstance(v, str) else v


class ModifierSpec(_Definition):
    kind: ChoiceKind = Field(validation_alias=AliasChoices("type", "kind"))
    source: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "source"))
    optional: bool = False
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data):
        return {"kind": data} if isinstance(data, str) else data


# -----------------------------
# Resources
# -----------------------------

class ClassProgression(_Definition):
    key_ability: List[str] = Field(default_factory=list, validation_alias=AliasChoices("key ability", "key_ability"))
    hp_per_level: int = Field(default=0, validation_alias=AliasChoices("hp per level", "hp_per_level"))
    perception: RankField = Rank.TRAINED
    fort_save: RankField = Field(default=Rank.TRAINED, validation_alias=AliasChoices("fort save", "fort_save"))
    reflex_save: RankField = Field(default=Rank.TRAINED, validation_alias=AliasChoices("reflex save", "reflex_save"))
    will_save: RankField = Field(default=Rank.TRAINED, validation_alias=AliasChoices("will save", "will_save"))
    free_skill_trained: int = Field(default=0, validation_alias=AliasChoices("free skill trained", "free_skill_trained"))
    trained_skills: List[str] = Field(default_factory=list, validation_alias=AliasChoices("trained skills", "trained_skills"))
    weapon_proficiencies: Dict[str, RankField] = Field(
        default_factory=dict, validation_alias=AliasChoices("weapon proficiencies", "weapon_proficiencies"))
    armor_proficiencies: Dict[str, RankField] = Field(
        default_factory=dict, validation_alias=AliasChoices("armor proficiencies", "armor_proficiencies"))
    advancement: Dict[int, List[str]] = Field(default_factory=dict)

    @field_validator("key_ability", mode="before")
    @classmethod
    def _one_or_many(cls, v):
        return [v] if isinstance(v, str) else v

    @model_validator(mode="after")
    def _levels(self):
        bad = [lvl for lvl in self.advancement if not 1 <= lvl <= 20]
        if bad:
            raise ValueError(f"advancement levels out of range 1..20: {sorted(bad)}")
        return self


class ResourceDefinition(_Definition):
    kind: ResourceKind
    name: str
    level: int = 0
    prereqs: Optional[str] = Field(default=None, validation_alias=AliasChoices("prereqs", "prerequisites"))
    requires: Optional[Condition] = None
    categories: List[str] = Field(default_factory=list)
    traits: List[str] = Field(default_factory=list)
    conditions: Optional[Condition] = None
    actions: Optional[Union[int, str]] = None
    description: str = ""
    effects: List[Effect] = Field(default_factory=list)
    questions: List[ChoiceSlot] = Field(default_factory=list)
    modifiers: Dict[str, ModifierSpec] = Field(default_factory=dict)
    item_type: Optional[ItemType] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    progression: Optional[ClassProgression] = None
    synthetic: bool = False  # advancement placeholder built by the engine, never loaded

    @property
    def key(self) -> Tuple[str, str]:
        return (self.kind, name_key(self.name))

    @property
    def slots(self) -> List[ChoiceSlot]:
        """Explicit questions followed by one implicit slot per symbolic modifier."""
        out = list(self.questions)
        for name, spec in self.modifiers.items():
            tag = name.lstrip("$")
            out.append(ChoiceSlot(label=spec.label or tag.replace("_", " "), tag=tag, kind=spec.kind,
                                  options={"from": spec.source} if spec.source else {},
                                  optional=spec.optional))
        return out

    def has_tag(self, tag: str) -> bool:
        return any(t.casefold() == tag.casefold() for t in (*self.categories, *self.traits))

    @model_validator(mode="after")
    def _validate(self):
        errs: list[str] = []
        if self.progression is not None and self.kind != "class":
            errs.append(f"only classes carry an advancement progression (got kind '{self.kind}')")
        if self.kind == "class" and self.progression is None:
            errs.append("class definitions need a progression")
        if self.item_type is not None and self.kind != "item":
            errs.append("item_type is only valid on items")
        tags = [s.tag for s in self.slots]
        dup = sorted({t for t in tags if tags.count(t) > 1})
        if dup:
            errs.append(f"duplicate choice tags: {dup}")
        declared = set(tags)
        for idx, eff in enumerate(self.effects):
            missing = effect_symbols(eff) - declared
            if missing:
                errs.append(f"effect #{idx} ({eff.op}) references undeclared symbol(s) {sorted(missing)}")
        if errs:
            raise ValueError("; ".join(errs))
        return self

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from .schema_models import RANK_ORDER, BonusType, Rank, proficiency_bonus
from .skills import ABILITIES, is_weapon_category

DiagnosticKind = Literal[
    "CycleError", "UnresolvedReference", "AmbiguousPrecedence", "ExpressionSyntaxError", "ExpressionError",
    "UnmetPrerequisite", "InvalidAnswer", "UnknownResource", "UnknownAdvancement", "DuplicateResource",
    "Invalidated", "Unsettled",
]


def label_key(label: str) -> str:
    """Labels compare case-insensitively, with '_' and runs of whitespace read as one space."""
    return " ".join(label.replace("_", " ").split()).casefold()


class InstanceStatus(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    INVALIDATED = "invalidated"
    REMOVED = "removed"


class Contribution(BaseModel):
    source: str          # instance key
    source_name: str
    bonus_type: BonusType = "untyped"
    value: Union[int, float] = 0   # unrounded; the stacked total is floored
    formula: Optional[str] = None   # symbolic remainder (dice)
    error: Optional[str] = None
    applied: bool = True


class StatLine(BaseModel):
    label: str
    contributions: List[Contribution] = Field(default_factory=list)
    total: int = 0
    formulas: List[str] = Field(default_factory=list)

    def display(self) -> str:
        parts = [str(self.total)] if self.total or not self.formulas else []
        parts.extend(self.formulas)
        return " + ".join(parts)


class ProficiencyEntry(BaseModel):
    category: str
    rank: Rank = Rank.UNTRAINED
    sources: List[str] = Field(default_factory=list)


class ItemState(BaseModel):
    name: str
    item_type: str = "gear"
    level: int = 0
    traits: List[str] = Field(default_factory=list)
    qualities: List[str] = Field(default_factory=list)
    properties: Dict[str, Any] = Field(default_factory=dict)
    source: str = ""

    def has_trait(self, trait: str) -> bool:
        return any(t.casefold() == trait.casefold() for t in self.traits)


class PendingChoice(BaseModel):
    instance: str
    resource: str
    label: str
    tag: str
    kind: str
    options: Dict[str, Any] = Field(default_factory=dict)


class Diagnostic(BaseModel):
    kind: DiagnosticKind
    message: str
    instance: Optional[str] = None


class GrantedNode(BaseModel):
    key: str
    kind: str
    name: str
    level: int
    status: InstanceStatus
    bindings: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    warnings: List[str] = Field(default_factory=list)
    children: List["GrantedNode"] = Field(default_factory=list)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


GrantedNode.model_rebuild()


class CharacterState(BaseModel):
    name: str = "Unnamed"
    level: int = 1
    class_name: Optional[str] = None
    ancestry: Optional[str] = None
    background: Optional[str] = None
    armor_category: str = "unarmored"
    labels: Dict[str, StatLine] = Field(default_factory=dict)
    proficiencies: Dict[str, ProficiencyEntry] = Field(default_factory=dict)
    items: Dict[str, ItemState] = Field(default_factory=dict)
    actions: List[str] = Field(default_factory=list)
    spells: List[str] = Field(default_factory=list)
    granted: List[str] = Field(default_factory=list)
    focus_point_cap: int = 3
    tree: List[GrantedNode] = Field(default_factory=list)
    pending: List[PendingChoice] = Field(default_factory=list)
    diagnostics: List[Diagnostic] = Field(default_factory=list)
    log: List[str] = Field(default_factory=list)

    # -------- queries --------
    def stat(self, label: str) -> Optional[StatLine]:
        return self.labels.get(label_key(label))

    def total(self, label: str) -> int:
        line = self.stat(label)
        return line.total if line else 0

    def rank(self, category: str) -> Rank:
        entry = self.proficiencies.get(label_key(category))
        return entry.rank if entry else Rank.UNTRAINED

    def proficiency_bonus(self, category: str) -> int:
        return proficiency_bonus(self.rank(category), self.level)

    def best_weapon_rank(self) -> Rank:
        ranks = [e.rank for k, e in self.proficiencies.items() if is_weapon_category(k)]
        return max(ranks, key=RANK_ORDER.get) if ranks else Rank.UNTRAINED

    def item(self, name: str) -> Optional[ItemState]:
        return self.items.get(label_key(name))

    def has_resource(self, name: str) -> bool:
        key = label_key(name)
        return any(label_key(g) == key for g in self.granted)

    @property
    def focus_points(self) -> int:
        return max(0, min(self.focus_point_cap, self.total("Focus Points")))

    def value_of(self, label: str) -> Optional[int]:
        """
        Numeric value of a label as seen by expressions: 'level', a stat total,
        a proficiency category's bonus (plus any stat of the same name), or '<ABILITY> mod'.
        """
        key = label_key(label)
        if key == "level":
            return self.level
        found = False
        value = 0
        if key in self.proficiencies:
            found = True
            value += proficiency_bonus(self.proficiencies[key].rank, self.level)
        if key in self.labels:
            found = True
            value += self.labels[key].total
        if not found and key.endswith(" mod"):
            ability = key[:-4].upper()
            if ability in ABILITIES and label_key(ability) in self.labels:
                return (self.labels[label_key(ability)].total - 10) // 2
        return value if found else None

    def find_nodes(self, name: str) -> List[GrantedNode]:
        key = label_key(name)
        return [n for root in self.tree for n in root.walk() if label_key(n.name) == key]

    def diagnostics_of(self, kind: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

from __future__ import annotations
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import yaml
from pydantic import TypeAdapter, ValidationError

from .advancement import classify
from .errors import CatalogError
from .schema_models import ResourceDefinition, name_key

logger = logging.getLogger(__name__)

ResourceAdapter = TypeAdapter(ResourceDefinition)

# Document effect keys -> 'op' discriminator
_EFFECT_OPS = {
    "bonus": "bonus",
    "grant": "grant",
    "grant resource": "grant",
    "proficiency": "proficiency",
    "gain proficiency": "proficiency",
    "add trait": "add trait",
    "modify item": "modify item",
    "focus pool": "focus pool",
    "gain focus pool": "focus pool",
    "add focus point": "focus pool",
    "gain spell": "gain spell",
}
_GRANT_KINDS = {
    "grant feat": "feat", "grant action": "action", "grant item": "item",
    "grant class feature": "class feature",
}
# variants that accept a bare scalar body, and the field it fills
_SCALAR_FIELD = {"grant": "resource", "gain spell": "spell", "focus pool": "points"}

_ENTRY_TAGS = {
    "class": "class", "class feature": "class feature", "feat": "feat", "action": "action",
    "item": "item", "ancestry": "ancestry", "background": "background",
}
_ITEM_TYPES = ("weapon", "armor", "shield", "gear")
_CLASS_BASE_KEYS = {"name", "description", "traits", "categories", "effects", "questions", "modifiers", "level", "kind"}

# Lookup preference when a reference does not say which kind it means
_FIND_ORDER = ("feat", "class feature", "action", "item", "ancestry", "background", "class")


def _norm(key: Any) -> str:
    return " ".join(str(key).replace("_", " ").replace("-", " ").split()).lower()


def _load_file(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in [".yaml", ".yml"]:
        return yaml.safe_load(text)
    return json.loads(text)


def _iter_files(root: Path, exts: Tuple[str, ...] = (".json", ".yaml", ".yml")) -> Iterable[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in exts)


@dataclass(frozen=True)
class Catalog:
    """Immutable index of every ResourceDefinition, keyed by (kind, case-folded name)."""
    resources: Mapping[Tuple[str, str], ResourceDefinition]
    sources: Mapping[Tuple[str, str], str]

    def get(self, kind: str, name: str) -> Optional[ResourceDefinition]:
        return self.resources.get((kind, name_key(name)))

    def require(self, kind: str, name: str) -> ResourceDefinition:
        found = self.get(kind, name)
        if found is None:
            raise KeyError(f"{kind} '{name}' is not in the catalog")
        return found

    def find(self, name: str, kind: Optional[str] = None) -> Optional[ResourceDefinition]:
        if kind is not None:
            return self.get(kind, name)
        for k in _FIND_ORDER:
            found = self.get(k, name)
            if found is not None:
                return found
        return None

    def by_kind(self, kind: str) -> List[ResourceDefinition]:
        return [d for (k, _), d in self.resources.items() if k == kind]

    def feats(self, categories: Sequence[str] = ()) -> List[ResourceDefinition]:
        return [d for d in self.by_kind("feat") if not categories or any(d.has_tag(c) for c in categories)]

    def source_of(self, definition: ResourceDefinition) -> Optional[str]:
        return self.sources.get(definition.key)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return (key[0], name_key(key[1])) in self.resources

    def __len__(self) -> int:
        return len(self.resources)


# -----------------------------
# Document normalization
# -----------------------------

def _item_fields(raw: Dict[str, Any], item_type: Optional[str] = None) -> Dict[str, Any]:
    data = dict(raw)
    if item_type is None:
        item_type = next((t for t in _ITEM_TYPES if t in data), "gear")
    props = data.pop(item_type, None) if item_type in data else data.pop("properties", None)
    data["item_type"] = item_type
    data["properties"] = props or {}
    return data


def _inline_item(body: Any, owner: str, source: str) -> Dict[str, Any]:
    # give item: {weapon: {name: Fist, ..., weapon: {...}}}  or  give item: {name: ..., ...}
    if isinstance(body, dict) and len(body) == 1 and _norm(next(iter(body))) in _ITEM_TYPES:
        item_type = _norm(next(iter(body)))
        inner = next(iter(body.values()))
        if not isinstance(inner, dict):
            raise CatalogError(f"'give item' on '{owner}' needs an item mapping", source=source)
        return _item_fields(inner, item_type)
    if isinstance(body, dict) and "name" in body:
        return _item_fields(body)
    raise CatalogError(f"'give item' on '{owner}' needs an item definition", source=source)


def normalize_effect(raw: Any, *, owner: str, source: str) -> Tuple[Dict[str, Any], List[ResourceDefinition]]:
    """
    One document effect -> (op-tagged dict, definitions hoisted out of it).
    Inline 'gain action' / 'give item' bodies become catalog entries plus a grant.
    """
    hoisted: List[ResourceDefinition] = []
    sibling = None
    if isinstance(raw, dict) and "op" in raw:
        return dict(raw), hoisted
    if isinstance(raw, str):
        key, body = raw, None
    elif isinstance(raw, dict):
        keys = [k for k in raw if k != "conditions"]
        if len(keys) != 1:
            raise CatalogError(f"effect on '{owner}' needs exactly one variant key, got {keys}", source=source)
        key, body = keys[0], raw[keys[0]]
        sibling = raw.get("conditions")
    else:
        raise CatalogError(f"effect on '{owner}' is neither a mapping nor a string: {raw!r}", source=source)

    op_key = _norm(key)
    if op_key == "gain action":
        if not isinstance(body, dict):
            raise CatalogError(f"'gain action' on '{owner}' needs an action definition", source=source)
        hoisted = parse_resource("action", body, source=source)
        out: Dict[str, Any] = {"op": "grant", "resource": hoisted[0].name, "kind": "action"}
    elif op_key == "give item":
        hoisted = parse_resource("item", _inline_item(body, owner, source), source=source)
        out = {"op": "grant", "resource": hoisted[0].name, "kind": "item"}
    elif op_key in _GRANT_KINDS:
        out = {"op": "grant", "kind": _GRANT_KINDS[op_key]}
        out.update(body if isinstance(body, dict) else {"resource": body})
    elif op_key in _EFFECT_OPS:
        op = _EFFECT_OPS[op_key]
        out = {"op": op}
        if isinstance(body, dict):
            out.update(body)
        elif body is not None:
            if op not in _SCALAR_FIELD:
                raise CatalogError(f"'{key}' on '{owner}' needs a mapping body", source=source)
            out[_SCALAR_FIELD[op]] = body
    else:
        raise CatalogError(f"unknown effect variant '{key}' on '{owner}'", source=source)

    if sibling is not None:
        out["conditions"] = {"AND": [out["conditions"], sibling]} if out.get("conditions") else sibling
    return out, hoisted


def parse_resource(kind: str, raw: Dict[str, Any], *, source: str) -> List[ResourceDefinition]:
    """One entry -> [its definition, *definitions hoisted from it]."""
    if not isinstance(raw, dict):
        raise CatalogError(f"{kind} entry is not a mapping: {raw!r}", source=source)
    data = dict(raw)
    data["kind"] = kind
    owner = str(data.get("name", f"<unnamed {kind}>"))
    out: List[ResourceDefinition] = []

    effects = []
    for eff in data.pop("effects", None) or []:
        normalized, hoisted = normalize_effect(eff, owner=owner, source=source)
        effects.append(normalized)
        out.extend(hoisted)
    data["effects"] = effects

    if kind == "class":
        features = data.pop("class features", None) or data.pop("class_features", None) or {}
        progression = {k: v for k, v in data.items() if k not in _CLASS_BASE_KEYS}
        data = {k: v for k, v in data.items() if k in _CLASS_BASE_KEYS}
        data["progression"] = progression
        for feature_name, body in features.items():
            out.extend(parse_resource("class feature", {"name": feature_name, **(body or {})}, source=source))
    elif kind == "item" and "item_type" not in data:
        data = _item_fields(data)
    if isinstance(data.get("action"), dict):
        data["actions"] = data.pop("action").get("actions")

    try:
        definition = ResourceAdapter.validate_python(data)
    except ValidationError as e:
        raise CatalogError(f"invalid {kind} '{owner}': {e}", source=source) from e
    return [definition, *out]


def parse_document(data: Any, *, source: str = "<memory>") -> List[ResourceDefinition]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise CatalogError("document must be a list of tagged entries", source=source)
    out: List[ResourceDefinition] = []
    for idx, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise CatalogError(f"entry #{idx} is not a mapping", source=source)
        tags = [k for k in entry if _norm(k) in _ENTRY_TAGS or _norm(k) == "class features"]
        if not tags and "name" in entry:
            # plain feat lists carry no tag
            out.extend(parse_resource("feat", entry, source=source))
            continue
        if len(entry) != 1:
            raise CatalogError(f"entry #{idx} needs exactly one tag, got {list(entry)}", source=source)
        tag, body = next(iter(entry.items()))
        norm = _norm(tag)
        if norm == "class features":
            if not isinstance(body, dict):
                raise CatalogError("'class-features' must map feature names to definitions", source=source)
            for feature_name, feature in body.items():
                out.extend(parse_resource("class feature", {"name": feature_name, **(feature or {})}, source=source))
        elif norm in _ENTRY_TAGS:
            out.extend(parse_resource(_ENTRY_TAGS[norm], body, source=source))
        else:
            raise CatalogError(f"unknown entry tag '{tag}'", source=source)
    return out


def check_advancement(catalog: Catalog) -> List[str]:
    """Advancement entries that match neither a class feature nor a placeholder slot."""
    warnings: List[str] = []
    for cls in catalog.by_kind("class"):
        for level, entries in sorted(cls.progression.advancement.items()):
            for entry in entries:
                if classify(entry, cls, catalog) is None:
                    warnings.append(f"{cls.name} level {level}: '{entry}' matches no class feature")
    return warnings


def load_documents(documents: Iterable[Tuple[str, Any]]) -> Catalog:
    resources: Dict[Tuple[str, str], ResourceDefinition] = {}
    sources: Dict[Tuple[str, str], str] = {}
    count = 0
    for source, data in documents:
        count += 1
        for definition in parse_document(data, source=source):
            if definition.key in resources:
                raise CatalogError(
                    f"Duplicate {definition.kind} '{definition.name}' (first defined in {sources[definition.key]})",
                    source=source)
            resources[definition.key] = definition
            sources[definition.key] = source
    catalog = Catalog(MappingProxyType(resources), MappingProxyType(sources))
    for warning in check_advancement(catalog):
        logger.warning(warning)
    logger.info("Loaded %d resources from %d documents", len(resources), count)
    return catalog


def load_catalog(base_dir: Path) -> Catalog:
    base_dir = Path(base_dir)
    if not base_dir.exists():
        raise CatalogError("content directory not found", source=str(base_dir))
    documents = []
    for fp in _iter_files(base_dir):
        try:
            documents.append((str(fp), _load_file(fp)))
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise CatalogError(f"unreadable document: {e}", source=str(fp)) from e
    return load_documents(documents)

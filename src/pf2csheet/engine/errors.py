from __future__ import annotations
from typing import Iterable, Optional


class CatalogError(RuntimeError):
    """Malformed definition, duplicate (kind, name) or unknown variant. Aborts loading."""

    def __init__(self, message: str, *, source: Optional[str] = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class CycleError(RuntimeError):
    """A resource transitively grants itself; only the offending branch is dropped."""

    def __init__(self, path: Iterable[str]):
        self.path = list(path)
        super().__init__("cyclic grant: " + " -> ".join(self.path))


class UnresolvedChoice(LookupError):
    def __init__(self, instance: str, tag: str):
        self.instance = instance
        self.tag = tag
        super().__init__(f"no answer for ${tag} on '{instance}'")


class ExpressionError(ValueError):
    pass


class ExpressionSyntaxError(ExpressionError):
    pass


class AmbiguousPrecedence(ExpressionError):
    pass


class UnresolvedReference(ExpressionError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"cannot resolve '{name}'")

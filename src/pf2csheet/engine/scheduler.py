from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Any, Callable, List, Optional

from .engine import Selections, resolve_character
from .loader import Catalog
from .settings import Settings
from .state import CharacterState

logger = logging.getLogger(__name__)


@dataclass
class Scheduled:
    generation: int
    selections: Selections


class ResolutionSession:
    """
    Queues resolution passes as selections change. Only the newest generation is
    ever delivered; anything older is discarded instead of merged.
    """

    def __init__(self, catalog: Catalog, selections: Optional[Selections] = None,
                 on_result: Optional[Callable[[CharacterState], None]] = None,
                 settings: Optional[Settings] = None):
        self.catalog = catalog
        self.selections = selections or Selections()
        self.on_result = on_result
        self.settings = settings or Settings()
        self.generation = 0
        self.delivered_generation = 0
        self.current: Optional[CharacterState] = None
        self._queue: List[Scheduled] = []

    def submit(self, selections: Selections) -> int:
        self.selections = selections
        self.generation += 1
        self._queue.append(Scheduled(generation=self.generation, selections=selections))
        return self.generation

    def answer(self, instance: str, tag: str, value: Any) -> int:
        return self.submit(self.selections.with_answer(instance, tag, value))

    def drain(self) -> Optional[CharacterState]:
        while self._queue:
            s = self._queue.pop(0)
            if s.generation < self.generation:
                logger.debug("skipping stale pass %d (latest %d)", s.generation, self.generation)
                continue
            state = resolve_character(self.catalog, s.selections, settings=self.settings)
            self.deliver(s.generation, state)
        return self.current

    def deliver(self, generation: int, state: CharacterState) -> bool:
        """Accept a finished pass; False (and discarded) if a newer one was submitted since."""
        if generation < self.generation or generation <= self.delivered_generation:
            logger.debug("discarding result of stale pass %d", generation)
            return False
        self.delivered_generation = generation
        self.current = state
        if self.on_result is not None:
            self.on_result(state)
        return True

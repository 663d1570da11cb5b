from __future__ import annotations
import logging
from typing import List

logger = logging.getLogger(__name__)


class TraceSession:
    """Explain lines for one resolution pass ('[Grant] ...', '[Bonus] ...')."""

    def __init__(self, level: int = 0) -> None:
        self.lines: List[str] = []
        self.level = level

    def add(self, line: str) -> None:
        if self.level:
            line = f"L{self.level} {line}"
        self.lines.append(line)
        logger.debug(line)

    def dump(self) -> List[str]:
        return list(self.lines)

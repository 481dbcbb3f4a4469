"""Append-only log of cost decisions."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Union

from buildfarm.types import CostDecision

logger = logging.getLogger(__name__)


class DecisionLogError(Exception):
    """Raised when the decision log cannot be read or written."""

    pass


class DecisionLog:
    """
    Append-only record of CostDecisions.

    Entries are kept in memory and, when a path is given, appended to a
    JSON-lines file that is reloaded on startup.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """
        Initialize decision log.

        Args:
            path: Optional JSON-lines file used for persistence
        """
        self.path = Path(path) if path else None
        self._entries: list[CostDecision] = []
        self._lock = threading.Lock()

        if self.path is not None and self.path.exists():
            self._entries = self._read(self.path)
            logger.info(f"Loaded {len(self._entries)} cost decisions from {self.path}")

    @staticmethod
    def _read(path: Path) -> list[CostDecision]:
        entries = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(CostDecision.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as e:
                        # Partial last line from an interrupted append
                        logger.warning(f"Skipping malformed decision at {path}:{line_no}: {e}")
        except OSError as e:
            raise DecisionLogError(f"Failed to read decision log {path}: {e}") from e
        return entries

    def append(self, decision: CostDecision) -> None:
        """
        Append a decision.

        Raises:
            DecisionLogError: If the entry cannot be persisted
        """
        with self._lock:
            if self.path is not None:
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(json.dumps(decision.to_dict()) + "\n")
                        f.flush()
                        os.fsync(f.fileno())
                except OSError as e:
                    raise DecisionLogError(
                        f"Failed to append decision to {self.path}: {e}"
                    ) from e
            self._entries.append(decision)

    def last(self) -> Optional[CostDecision]:
        """Return the most recent decision, if any."""
        with self._lock:
            return self._entries[-1] if self._entries else None

    def history(self, limit: Optional[int] = None) -> list[CostDecision]:
        """
        Get decisions, newest first.

        Args:
            limit: Maximum number of decisions to return (optional)
        """
        with self._lock:
            entries = list(reversed(self._entries))
        if limit is not None:
            entries = entries[:limit]
        return entries

    def __len__(self) -> int:
        return len(self._entries)

"""
Step ledger: an append-only record of completed provisioning stages.

The backing store is a plain-text file with one stage name per line. Lookup is
an exact line match, so appending the same name twice is harmless. A missing
file means no stage has completed yet. I/O failures are fatal: the caller must
never guess whether a non-idempotent stage already ran.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Set, Union

from server_setup.errors import LedgerError

logger = logging.getLogger("server_setup.ledger")


class StageLedger(ABC):
    """Interface injected into the stage runner."""

    @abstractmethod
    def is_complete(self, stage_name: str) -> bool:
        """Return True if stage_name was previously marked complete."""

    @abstractmethod
    def mark_complete(self, stage_name: str) -> None:
        """Record stage_name as complete. No duplicate check is made."""

    @abstractmethod
    def completed(self) -> List[str]:
        """Completed stage names in the order they were recorded."""

    @abstractmethod
    def reset(self) -> None:
        """Forget every completed stage (operator-requested only)."""


class FileLedger(StageLedger):
    """Ledger backed by a text file, one stage name per line."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _read_lines(self) -> List[str]:
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise LedgerError(f"Cannot read progress file {self.path}: {e}") from e

    def is_complete(self, stage_name: str) -> bool:
        return stage_name in self._read_lines()

    def mark_complete(self, stage_name: str) -> None:
        if not stage_name or "\n" in stage_name:
            raise ValueError(f"Invalid stage name: {stage_name!r}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(f"{stage_name}\n")
        except OSError as e:
            raise LedgerError(f"Cannot write progress file {self.path}: {e}") from e
        logger.debug(f"Recorded stage {stage_name} in {self.path}")

    def completed(self) -> List[str]:
        seen: List[str] = []
        for line in self._read_lines():
            if line and line not in seen:
                seen.append(line)
        return seen

    def reset(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise LedgerError(f"Cannot remove progress file {self.path}: {e}") from e
        logger.info(f"Progress file {self.path} removed")


class MemoryLedger(StageLedger):
    """In-memory ledger for tests and dry runs."""

    def __init__(self, completed: Iterable[str] = ()) -> None:
        self._order: List[str] = []
        self._names: Set[str] = set()
        for name in completed:
            self.mark_complete(name)

    def is_complete(self, stage_name: str) -> bool:
        return stage_name in self._names

    def mark_complete(self, stage_name: str) -> None:
        if stage_name not in self._names:
            self._order.append(stage_name)
        self._names.add(stage_name)

    def completed(self) -> List[str]:
        return list(self._order)

    def reset(self) -> None:
        self._order.clear()
        self._names.clear()

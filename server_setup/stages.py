"""
Stage definitions and the ledger-gated runner.

Every stage follows the same pattern:

    if ledger.is_complete(name): skip
    else: action(); ledger.mark_complete(name)

An action that raises leaves no record behind, so the next run retries the whole
stage. Stages run strictly in order and the first failure aborts the run.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from server_setup.errors import SetupAborted, SetupError, StageError
from server_setup.ledger import StageLedger
from server_setup.ui import print_section, print_success


class StageOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class Stage:
    """A named, idempotent unit of provisioning work."""

    name: str
    description: str
    action: Callable[[], None]
    skip_message: Optional[str] = None
    when: Optional[Callable[[], bool]] = None


class StageRunner:
    """Runs stages in order, consulting the ledger before each one."""

    def __init__(
        self, ledger: StageLedger, logger: Optional[logging.Logger] = None
    ) -> None:
        self.ledger = ledger
        self.logger = logger or logging.getLogger("server_setup.stages")
        self.status: Dict[str, Dict[str, str]] = {}

    def _set_status(self, name: str, status: str, message: str = "") -> None:
        self.status[name] = {"status": status, "message": message}

    def run(self, stage: Stage) -> StageOutcome:
        """Run one stage unless the ledger says it is done."""
        if stage.when is not None and not stage.when():
            self.logger.debug(f"Stage {stage.name} not applicable, skipping")
            self._set_status(stage.name, "not_applicable", "Not selected")
            return StageOutcome.NOT_APPLICABLE

        if self.ledger.is_complete(stage.name):
            self.logger.info(
                stage.skip_message or f"{stage.description} already done, skipping"
            )
            self._set_status(stage.name, "skipped", "Completed in a previous run")
            return StageOutcome.SKIPPED

        print_section(stage.description)
        self._set_status(stage.name, "running")
        start = time.time()
        try:
            stage.action()
        except SetupAborted:
            self._set_status(stage.name, "pending", "Deferred by operator")
            raise
        except SetupError as e:
            self._set_status(stage.name, "failed", str(e))
            raise
        except Exception as e:
            self._set_status(stage.name, "failed", str(e))
            self.logger.error(f"{stage.description} failed: {e}")
            raise StageError(stage.name, str(e)) from e

        self.ledger.mark_complete(stage.name)
        elapsed = time.time() - start
        self._set_status(stage.name, "completed", f"Completed in {elapsed:.2f}s")
        print_success(f"{stage.description} completed in {elapsed:.2f}s")
        return StageOutcome.COMPLETED

    def run_all(self, stages: Sequence[Stage]) -> Dict[str, StageOutcome]:
        """Run stages in order and stop at the first failure."""
        for stage in stages:
            self._set_status(stage.name, "pending")

        outcomes: Dict[str, StageOutcome] = {}
        for stage in stages:
            outcomes[stage.name] = self.run(stage)
        return outcomes

    def pending(self) -> List[str]:
        return [name for name, data in self.status.items() if data["status"] == "pending"]

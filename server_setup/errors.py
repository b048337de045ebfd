"""Exception hierarchy shared by the setup flows and the monitors."""


class SetupError(Exception):
    """Base class for every fatal error raised by server_setup."""


class ConfigurationError(SetupError):
    """Missing or malformed configuration; never retried."""


class LedgerError(SetupError):
    """The progress ledger could not be read or written."""


class SetupAborted(SetupError):
    """The operator chose to stop; the run ends cleanly and can be resumed later."""


class StageError(SetupError):
    """A provisioning stage failed; the run aborts and the stage stays incomplete."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage

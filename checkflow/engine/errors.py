"""Exception taxonomy for checkflow.

Configuration and planning errors are fatal for a whole invocation. Tool
failures, partial outputs and tracking-store failures are isolated to the unit
of work that raised them and are retried on the next invocation.
"""


class CheckflowError(Exception):
    """Base class for every error raised by checkflow."""


class ConfigurationError(CheckflowError, ValueError):
    """A mandatory setting is missing or malformed."""


class PlanningError(CheckflowError, ValueError):
    """The chunk plan cannot be built from the given regions and sizes."""


class ToolFailure(CheckflowError, RuntimeError):
    """An invoked command exited with a non-zero status.

    Attributes:
        returncode: Exit status of the command, if known.
        lock_id: Lock identifier of the job that failed, if any.
    """

    def __init__(
        self, message: str, returncode: int | None = None, lock_id: str | None = None
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.lock_id = lock_id


class PartialOutputError(ToolFailure):
    """A command reported success but left its outputs missing or empty."""


class TransactionalMetadataError(CheckflowError, RuntimeError):
    """Recording status in the tracking store failed and was rolled back."""

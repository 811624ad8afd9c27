"""Exception hierarchy shared by the repair protocol and the job layer."""


class TableRepairError(Exception):
    """Base class for every error raised deliberately by this package."""


# ─── Provider Errors ─────────────────────────────────────────────────────────


class ProviderError(TableRepairError):
    """A provider call failed for a reason that rotation cannot fix (transport, 5xx, bad payload)."""


class KeyExhaustedError(ProviderError):
    """The pool rejected a key for authorization or payment reasons (HTTP 401/402)."""


class NoKeysConfiguredError(ProviderError):
    """The rotating pool was used without any configured key."""


# ─── Job Layer Errors ────────────────────────────────────────────────────────


class BatchNotFoundError(TableRepairError):
    """No batch exists with the requested id."""


class TaskNotFoundError(TableRepairError):
    """No task exists with the requested id."""


class InvalidBatchStateError(TableRepairError):
    """The requested transition is not allowed from the batch's current status."""


class IntakeError(TableRepairError):
    """The uploaded document cannot be accepted (bad JSON, no questions, too large)."""

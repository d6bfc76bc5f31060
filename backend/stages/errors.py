"""
Engine error taxonomy.

Validation errors leave state untouched and are reported to the caller.
Transaction errors mean the store refused or could not finish an atomic
update; the caller may re-invoke. Consistency drift is never raised, only
logged and alerted (see alerts.auditor).
"""


class EngineValidationError(ValueError):
    """Request rejected before any write (bad counts, missing fields)."""


class DepartureValidationError(EngineValidationError):
    """A departure request violates a precondition of the recorder."""


class StageTransitionError(EngineValidationError):
    """Requested lifecycle transition is not allowed from the stage's current status."""


class EngineNotFoundError(LookupError):
    """Referenced center, stage or pilgrim group does not exist."""


class EngineTransactionError(RuntimeError):
    """Atomic update was rolled back (conflicting concurrent write or store failure)."""

"""Typed rejections raised by the scheduling and billing engine."""


class SchedulingError(Exception):
    kind = 'invalid_state'
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class SlotUnavailable(SchedulingError):
    """The slot is outside the clinician's availability or was taken by a concurrent booking."""
    kind = 'slot_unavailable'


class CycleBlocked(SchedulingError):
    """An unpaid consultation or package blocks the requested booking."""
    kind = 'needs_payment'


class DuplicateBillingRecord(SchedulingError):
    kind = 'duplicate_billing_record'


class ConflictWarning(SchedulingError):
    """Non-fatal overlap with an existing booking; the caller may confirm an override."""
    kind = 'conflict'

    def __init__(self, detail: str, conflicting_appointments=None):
        super().__init__(detail)
        self.conflicting_appointments = list(conflicting_appointments or [])


class PersistenceFailure(SchedulingError):
    kind = 'persistence_failure'
    retryable = True


class NotFound(SchedulingError):
    kind = 'not_found'


class InvalidState(SchedulingError):
    kind = 'invalid_state'

"""
Exception hierarchy for the Shift Reconciliation System

Lookup failures and business-rule rejections are recoverable; storage
failures are fatal to the operation in flight and always propagate.
"""

from typing import Optional


class ReconcilerError(Exception):
    """Base exception for reconciliation operations"""
    pass


class ConfigError(ReconcilerError):
    """Raised when settings are missing or invalid"""
    pass


class NotFoundError(ReconcilerError):
    """Raised when a shift or proposal id is unknown"""
    pass


class ShiftNotFoundError(NotFoundError):
    """Raised when a shift id is not present in the store"""

    def __init__(self, shift_id: str):
        super().__init__(f"Shift {shift_id} not found")
        self.shift_id = shift_id


class ProposalNotFoundError(NotFoundError):
    """Raised when a proposal id has no open workflow"""

    def __init__(self, proposal_id: str):
        super().__init__(f"No open workflow for proposal {proposal_id}")
        self.proposal_id = proposal_id


class StaleVersionError(ReconcilerError):
    """Raised when a commit was computed against an outdated shift version"""

    def __init__(self, shift_id: str, expected: Optional[int], actual: Optional[int],
                 detail: str = ""):
        message = f"Shift {shift_id} is at version {actual}, proposal expected {expected}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.shift_id = shift_id
        self.expected = expected
        self.actual = actual


class HardConflictError(ReconcilerError):
    """Raised on request when a proposal was rejected by a business rule"""

    def __init__(self, proposal_id: str, reason_codes):
        codes = ", ".join(code.value for code in reason_codes)
        super().__init__(f"Proposal {proposal_id} rejected: {codes}")
        self.proposal_id = proposal_id
        self.reason_codes = tuple(reason_codes)


class StorageError(ReconcilerError):
    """Base exception for durability layer failures"""
    pass


class StorageIOError(StorageError):
    """Raised when reading or writing durable state fails"""
    pass


class DataFileCorruptedError(StorageError):
    """Raised when a data file cannot be parsed and no backup is usable"""
    pass


class CalendarProviderError(ReconcilerError):
    """Raised when external calendar events cannot be read"""
    pass


class WorkflowError(ReconcilerError):
    """Raised when an approval workflow command cannot be honoured"""
    pass


class InvalidTransitionError(WorkflowError):
    """Raised on a state change the workflow state machine does not allow"""

    def __init__(self, proposal_id: str, current, target):
        super().__init__(
            f"Workflow {proposal_id} cannot move from {current.value} to {target.value}"
        )
        self.proposal_id = proposal_id
        self.current = current
        self.target = target

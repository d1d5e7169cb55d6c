"""
Bulk Change Coordinator for the Shift Reconciliation System

Submits an ordered batch of proposals one by one. There is no rollback:
each item stands on its own and the result reports every item.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Any, Iterable, List, Optional, Tuple

from .approval_workflow import ApprovalWorkflow, WorkflowOutcome
from .errors import ReconcilerError
from .models import ChangeProposal, ProposalOrigin
from .shift_store import ShiftStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkItemOutcome:
    """Result for one proposal of a batch"""
    index: int
    proposal: ChangeProposal
    outcome: Optional[WorkflowOutcome] = None
    error: Optional[Exception] = None

    @property
    def committed(self) -> bool:
        return self.outcome is not None and self.outcome.committed

    @property
    def rejected(self) -> bool:
        return self.outcome is not None and self.outcome.rejected

    @property
    def pending(self) -> bool:
        return self.outcome is not None and self.outcome.pending

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class BulkResult:
    items: List[BulkItemOutcome] = field(default_factory=list)

    @property
    def committed(self) -> List[BulkItemOutcome]:
        return [item for item in self.items if item.committed]

    @property
    def rejected(self) -> List[BulkItemOutcome]:
        return [item for item in self.items if item.rejected]

    @property
    def pending(self) -> List[BulkItemOutcome]:
        return [item for item in self.items if item.pending]

    @property
    def failed(self) -> List[BulkItemOutcome]:
        return [item for item in self.items if item.failed]

    def summary(self) -> str:
        return (
            f"{len(self.items)} proposals: {len(self.committed)} committed, "
            f"{len(self.pending)} pending, {len(self.rejected)} rejected, "
            f"{len(self.failed)} failed"
        )


class BulkChangeCoordinator:
    """Applies a batch of proposals item by item through the approval workflow"""

    def __init__(self, workflow: ApprovalWorkflow):
        self.workflow = workflow

    def submit_batch(self, proposals: Iterable[ChangeProposal]) -> BulkResult:
        """
        Submit proposals in order, each with the base version it was built with.

        Later items may be rejected because an earlier item of the same batch
        changed a shift they touch. An item whose submission raises is recorded
        with its error and the batch carries on.
        """
        result = BulkResult()
        for index, proposal in enumerate(proposals):
            try:
                outcome = self.workflow.submit(proposal)
                result.items.append(BulkItemOutcome(index, proposal, outcome=outcome))
            except ReconcilerError as e:
                logger.error(f"Bulk item {index} (proposal {proposal.proposal_id}) failed: {e}")
                result.items.append(BulkItemOutcome(index, proposal, error=e))

        logger.info(f"Bulk batch finished: {result.summary()}")
        return result

    @staticmethod
    def build_bulk_switch(store: ShiftStore, shift_ids: Iterable[str],
                          requested_by: Optional[str] = None, **changes: Any) -> List[ChangeProposal]:
        """Modify proposals applying the same changes to many shifts, versions captured now"""
        snapshot = store.snapshot()
        return [
            ChangeProposal.for_modify(snapshot.get(shift_id), requested_by=requested_by, **changes)
            for shift_id in shift_ids
        ]

    @staticmethod
    def build_bulk_create(owner_id: str,
                          specs: Iterable[Tuple[date, Optional[time], Optional[time]]],
                          label: str = "",
                          origin: ProposalOrigin = ProposalOrigin.USER) -> List[ChangeProposal]:
        """Create proposals for (date, start, end) triples of one owner"""
        return [
            ChangeProposal.for_create(owner_id, shift_date, start_time, end_time,
                                      label=label, origin=origin)
            for shift_date, start_time, end_time in specs
        ]

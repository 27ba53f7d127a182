"""
Overdue Sweep Module

Batch job promoting past-due pending installments to overdue and restoring
overdue installments whose due date lies in the future back to pending.
Each installment is updated in its own transaction; a failure on one is
logged and the sweep moves on.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from .actors import Actor, SYSTEM
from .loans import InstallmentStatus, LoanManager, installments_in_status
from .storage import StorageInterface


logger = logging.getLogger("device_finance.overdue")


@dataclass
class EntityFailure:
    entity_id: str
    error: str


@dataclass
class SweepResult:
    count: int = 0        # Installments marked overdue
    restored: int = 0     # Overdue installments returned to pending
    processed: int = 0
    failures: List[EntityFailure] = field(default_factory=list)


class OverdueSweep:
    """Marks unpaid installments past their due date as overdue"""

    def __init__(self, storage: StorageInterface, loan_manager: LoanManager):
        self.storage = storage
        self.loan_manager = loan_manager

    def sweep(self, today: Optional[date] = None, actor: Actor = SYSTEM) -> SweepResult:
        """
        Run the sweep. Safe to repeat: installments already overdue are
        skipped, so a second run on the same day marks nothing.
        """
        today = today or date.today()
        result = SweepResult()
        logger.info(f"Overdue sweep started for {today.isoformat()}")

        candidates = [
            i for i in installments_in_status(self.storage, InstallmentStatus.PENDING)
            if i.due_date < today
        ]
        future_overdue = [
            i for i in installments_in_status(self.storage, InstallmentStatus.OVERDUE)
            if i.due_date > today
        ]

        for installment in candidates + future_overdue:
            result.processed += 1
            try:
                with self.storage.atomic():
                    current = self.loan_manager.get_installment(installment.id)
                    previous = current.status
                    if not self.loan_manager.refresh_installment_status(current, actor, today):
                        continue
                    self.loan_manager.recompute_loan_status(current.loan_id, actor)
                if previous == InstallmentStatus.PENDING and current.status == InstallmentStatus.OVERDUE:
                    result.count += 1
                elif previous == InstallmentStatus.OVERDUE and current.status == InstallmentStatus.PENDING:
                    result.restored += 1
            except Exception as e:
                logger.error(f"Overdue sweep failed for installment {installment.id}: {e}",
                             extra={'action': 'overdue_sweep', 'resource': f"installment:{installment.id}"})
                result.failures.append(EntityFailure(installment.id, str(e)))

        logger.info(
            f"Overdue sweep finished: {result.count} marked overdue, {result.restored} restored, "
            f"{len(result.failures)} failed of {result.processed}"
        )
        return result

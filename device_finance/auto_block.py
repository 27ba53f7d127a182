"""
Auto-Block Policy Module

Batch job locking the devices of seriously delinquent loans: any loan with an
installment overdue by at least the threshold gets its unlocked devices
requested and confirmed locked by the system actor, then the customer is
notified. Per-device failures are logged and the batch continues.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from .actors import SYSTEM
from .devices import DeviceLockService, LockStatus, devices_for_loan
from .exceptions import InvalidStateError
from .loans import Installment, overdue_installments
from .notifications import NotificationDispatcher, NotificationType
from .overdue import EntityFailure
from .storage import StorageInterface


logger = logging.getLogger("device_finance.auto_block")

DEFAULT_THRESHOLD_DAYS = 30
DEFAULT_LOCK_REASON = "Overdue payment"


@dataclass
class AutoBlockResult:
    count: int = 0        # Devices locked
    processed: int = 0
    skipped: int = 0      # Already pending or locked
    failures: List[EntityFailure] = field(default_factory=list)


class AutoBlockPolicy:
    """Locks devices whose loans are overdue beyond the threshold"""

    def __init__(
        self,
        storage: StorageInterface,
        lock_service: DeviceLockService,
        notifier: Optional[NotificationDispatcher] = None,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        lock_reason: str = DEFAULT_LOCK_REASON
    ):
        self.storage = storage
        self.lock_service = lock_service
        self.notifier = notifier
        self.threshold_days = threshold_days
        self.lock_reason = lock_reason

    def run(self, threshold_days: Optional[int] = None, today: Optional[date] = None) -> AutoBlockResult:
        threshold = self.threshold_days if threshold_days is None else threshold_days
        today = today or date.today()
        result = AutoBlockResult()
        logger.info(f"Auto-block started: threshold {threshold} days as of {today.isoformat()}")

        # Most overdue installment per loan
        worst: Dict[str, Installment] = {}
        for installment in overdue_installments(self.storage, today, min_days=threshold):
            current = worst.get(installment.loan_id)
            if current is None or installment.due_date < current.due_date:
                worst[installment.loan_id] = installment

        for loan_id, installment in worst.items():
            for device in devices_for_loan(self.storage, loan_id):
                result.processed += 1
                if self.lock_service.current_status(device.id) != LockStatus.UNLOCKED:
                    result.skipped += 1
                    continue
                try:
                    if self._block(device.id, device.customer_id, installment, today):
                        result.count += 1
                    else:
                        result.skipped += 1
                except Exception as e:
                    logger.error(f"Auto-block failed for device {device.id}: {e}",
                                 extra={'action': 'auto_block', 'resource': f"device:{device.id}"})
                    result.failures.append(EntityFailure(device.id, str(e)))

        logger.info(
            f"Auto-block finished: {result.count} locked, {result.skipped} skipped, "
            f"{len(result.failures)} failed of {result.processed}"
        )
        return result

    def _block(self, device_id: str, customer_id: Optional[str],
               installment: Installment, today: date) -> bool:
        """Request and confirm in one transaction; False when the device was locked meanwhile"""
        with self.storage.lock(f"device:{device_id}"):
            with self.storage.atomic():
                requested = self.lock_service.request_lock(device_id, SYSTEM, self.lock_reason, notify=False)
                if not requested.success:
                    return False
                confirmed = self.lock_service.confirm_lock(device_id, SYSTEM, notify=False)
                if not confirmed.success:
                    raise InvalidStateError(confirmed.error.message)

                if self.notifier is not None:
                    data = {
                        "device_id": device_id,
                        "installment_number": installment.sequence,
                        "days_overdue": installment.days_overdue(today),
                        "loan_id": installment.loan_id,
                    }
                    self.storage.on_commit(
                        lambda: self.notifier.dispatch(NotificationType.DEVICE_BLOCKED_OVERDUE, customer_id, data))
        return True

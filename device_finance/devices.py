"""
Device Lock Module

Device registry and the device lock state machine.

Lock status is never stored as a column: every transition appends a new,
immutable DeviceLockState row and the current state is the latest row for the
device. Guard check and append run under a per-device lock, and the append is
a compare-and-append on the next sequence number, so two concurrent
RequestLock calls on one device cannot both succeed.

    unlocked --request_lock--> pending --confirm_lock--> locked --unlock--> unlocked
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import logging
import uuid

from .actors import Actor
from .audit import AuditTrail, AuditEventType
from .exceptions import ConcurrentModificationError, EntityNotFoundError, InvalidStateError, ValidationError
from .notifications import NotificationDispatcher, NotificationType
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("device_finance.devices")

DEVICES_TABLE = "devices"
LOCK_STATES_TABLE = "device_lock_states"
DEFAULT_UNLOCK_REASON = "Payment received"


class LockStatus(Enum):
    UNLOCKED = "unlocked"
    PENDING = "pending"
    LOCKED = "locked"


@dataclass
class Device(StorageRecord):
    """Collateral phone, backing at most one loan"""
    imei: str
    brand: str
    model: str
    loan_id: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass
class DeviceLockState(StorageRecord):
    """One immutable row of a device's lock history"""
    device_id: str
    sequence: int
    status: LockStatus
    reason: Optional[str]
    initiated_by: Actor
    initiated_at: datetime
    confirmed_by: Optional[Actor] = None
    confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvalidTransition:
    """Guard failure: the device was not in the state the operation requires"""
    operation: str
    current: LockStatus
    requested: LockStatus
    required: LockStatus

    @property
    def message(self) -> str:
        return (f"Cannot {self.operation}: device is {self.current.value}, "
                f"must be {self.required.value} to become {self.requested.value}")


@dataclass
class TransitionResult:
    success: bool
    state: Optional[DeviceLockState] = None
    error: Optional[InvalidTransition] = None

    @property
    def status(self) -> Optional[LockStatus]:
        return self.state.status if self.state else None


def _state_id(device_id: str, sequence: int) -> str:
    return f"{device_id}:{sequence:08d}"


def _state_to_dict(state: DeviceLockState) -> Dict:
    result = state.to_dict()
    result['status'] = state.status.value
    result['initiated_by'] = state.initiated_by.to_dict()
    result['initiated_at'] = state.initiated_at.isoformat()
    result['confirmed_by'] = state.confirmed_by.to_dict() if state.confirmed_by else None
    result['confirmed_at'] = state.confirmed_at.isoformat() if state.confirmed_at else None
    return result


def _state_from_dict(data: Dict) -> DeviceLockState:
    return DeviceLockState(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        device_id=data['device_id'],
        sequence=data['sequence'],
        status=LockStatus(data['status']),
        reason=data.get('reason'),
        initiated_by=Actor.from_dict(data['initiated_by']),
        initiated_at=datetime.fromisoformat(data['initiated_at']),
        confirmed_by=Actor.from_dict(data.get('confirmed_by')),
        confirmed_at=datetime.fromisoformat(data['confirmed_at']) if data.get('confirmed_at') else None,
    )


def lock_history(storage: StorageInterface, device_id: str) -> List[DeviceLockState]:
    """Lock states of a device, oldest first"""
    states = [_state_from_dict(d) for d in storage.find(LOCK_STATES_TABLE, {'device_id': device_id})]
    return sorted(states, key=lambda s: s.sequence)


def latest_lock_state(storage: StorageInterface, device_id: str) -> Optional[DeviceLockState]:
    history = lock_history(storage, device_id)
    return history[-1] if history else None


def devices_in_status(storage: StorageInterface, status: LockStatus) -> List[Device]:
    """Devices whose current lock status is status; devices without history count as unlocked"""
    devices = [Device.from_dict(d) for d in storage.load_all(DEVICES_TABLE)]
    latest: Dict[str, DeviceLockState] = {}
    for data in storage.load_all(LOCK_STATES_TABLE):
        state = _state_from_dict(data)
        current = latest.get(state.device_id)
        if current is None or state.sequence > current.sequence:
            latest[state.device_id] = state

    def current_status(device: Device) -> LockStatus:
        state = latest.get(device.id)
        return state.status if state else LockStatus.UNLOCKED

    return [d for d in devices if current_status(d) == status]


def locked_devices(storage: StorageInterface) -> List[Device]:
    return devices_in_status(storage, LockStatus.LOCKED)


def pending_devices(storage: StorageInterface) -> List[Device]:
    return devices_in_status(storage, LockStatus.PENDING)


def devices_for_loan(storage: StorageInterface, loan_id: str) -> List[Device]:
    return [Device.from_dict(d) for d in storage.find(DEVICES_TABLE, {'loan_id': loan_id})]


class DeviceLockService:
    """
    Device registry and lock state machine
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        notifier: Optional[NotificationDispatcher] = None,
        unlock_reason: str = DEFAULT_UNLOCK_REASON
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.unlock_reason = unlock_reason

        self.devices_table = DEVICES_TABLE
        self.lock_states_table = LOCK_STATES_TABLE

    # Registry

    def register_device(self, imei: str, brand: str, model: str, actor: Actor) -> Device:
        if not imei:
            raise ValidationError("IMEI is required")
        if self.storage.find(self.devices_table, {'imei': imei}):
            raise ValidationError(f"Device with IMEI {imei} is already registered")

        now = datetime.now(timezone.utc)
        device = Device(id=str(uuid.uuid4()), created_at=now, updated_at=now,
                        imei=imei, brand=brand, model=model)
        with self.storage.atomic():
            self._save_device(device)
            self.audit_trail.record(
                AuditEventType.DEVICE_REGISTERED, "device", device.id,
                {"imei": imei, "brand": brand, "model": model},
                actor
            )
        return device

    def get_device(self, device_id: str) -> Device:
        data = self.storage.load(self.devices_table, device_id)
        if not data:
            raise EntityNotFoundError(f"Device {device_id} not found")
        return Device.from_dict(data)

    def assign_to_loan(self, device_id: str, loan_id: str, customer_id: str, actor: Actor) -> Device:
        """Bind a device to its loan; runs inside the caller's transaction"""
        with self.storage.atomic():
            device = self.get_device(device_id)
            if device.loan_id and device.loan_id != loan_id:
                raise InvalidStateError(f"Device {device_id} already assigned to loan {device.loan_id}")
            device.loan_id = loan_id
            device.customer_id = customer_id
            device.updated_at = datetime.now(timezone.utc)
            self._save_device(device)
        logger.debug(f"Assigned device {device_id} to loan {loan_id} by {actor.audit_id}")
        return device

    # State machine

    def current_state(self, device_id: str) -> Optional[DeviceLockState]:
        """Latest lock row, or None for a device that was never locked"""
        return latest_lock_state(self.storage, device_id)

    def current_status(self, device_id: str) -> LockStatus:
        state = self.current_state(device_id)
        return state.status if state else LockStatus.UNLOCKED

    def history(self, device_id: str) -> List[DeviceLockState]:
        """Lock history, newest first"""
        return list(reversed(lock_history(self.storage, device_id)))

    def request_lock(self, device_id: str, actor: Actor, reason: str,
                     notify: bool = True) -> TransitionResult:
        return self._transition(device_id, "request_lock", LockStatus.UNLOCKED, LockStatus.PENDING,
                                actor, reason, notify)

    def confirm_lock(self, device_id: str, actor: Actor, notify: bool = True) -> TransitionResult:
        return self._transition(device_id, "confirm_lock", LockStatus.PENDING, LockStatus.LOCKED,
                                actor, None, notify)

    def unlock(self, device_id: str, actor: Actor, reason: Optional[str] = None,
               notify: bool = True) -> TransitionResult:
        """Release a locked device; ``reason`` defaults to the configured unlock reason"""
        return self._transition(device_id, "unlock", LockStatus.LOCKED, LockStatus.UNLOCKED,
                                actor, reason or self.unlock_reason, notify)

    def _transition(
        self,
        device_id: str,
        operation: str,
        required: LockStatus,
        target: LockStatus,
        actor: Actor,
        reason: Optional[str],
        notify: bool
    ) -> TransitionResult:
        with self.storage.lock(f"device:{device_id}"):
            with self.storage.atomic():
                device = self.get_device(device_id)
                latest = self.current_state(device_id)
                current = latest.status if latest else LockStatus.UNLOCKED

                if current != required:
                    error = InvalidTransition(operation=operation, current=current,
                                              requested=target, required=required)
                    logger.warning(f"Device {device_id}: {error.message}")
                    return TransitionResult(success=False, state=latest, error=error)

                now = datetime.now(timezone.utc)
                sequence = latest.sequence + 1 if latest else 1
                state = DeviceLockState(
                    id=_state_id(device_id, sequence),
                    created_at=now,
                    updated_at=now,
                    device_id=device_id,
                    sequence=sequence,
                    status=target,
                    reason=reason,
                    initiated_by=actor,
                    initiated_at=now,
                )
                if target == LockStatus.LOCKED:
                    # Confirmation keeps the request's reason and initiator
                    state.reason = latest.reason
                    state.initiated_by = latest.initiated_by
                    state.initiated_at = latest.initiated_at
                    state.confirmed_by = actor
                    state.confirmed_at = now
                elif target == LockStatus.UNLOCKED:
                    state.confirmed_by = actor
                    state.confirmed_at = now

                self._append(state, latest)
                self.audit_trail.record(
                    AuditEventType.DEVICE_LOCK_STATE_CHANGED, "device", device_id,
                    {
                        "operation": operation,
                        "previous_status": current,
                        "new_status": target,
                        "sequence": sequence,
                        "reason": state.reason,
                    },
                    actor
                )
                if notify:
                    self._notify_after_commit(device, state)

        logger.info(f"Device {device_id} {current.value} -> {target.value} by {actor.audit_id}")
        return TransitionResult(success=True, state=state)

    def _append(self, state: DeviceLockState, expected_latest: Optional[DeviceLockState]) -> None:
        """Compare-and-append: the latest row must still be the one the guard saw"""
        latest = self.current_state(state.device_id)
        latest_id = latest.id if latest else None
        expected_id = expected_latest.id if expected_latest else None
        if latest_id != expected_id or self.storage.exists(self.lock_states_table, state.id):
            raise ConcurrentModificationError(
                f"Lock history of device {state.device_id} changed during {state.status.value} transition")
        self.storage.save(self.lock_states_table, state.id, _state_to_dict(state))

    def _notify_after_commit(self, device: Device, state: DeviceLockState) -> None:
        if self.notifier is None:
            return
        notification_type = {
            LockStatus.PENDING: NotificationType.DEVICE_LOCK_REQUESTED,
            LockStatus.LOCKED: NotificationType.DEVICE_LOCKED,
            LockStatus.UNLOCKED: NotificationType.DEVICE_UNLOCKED,
        }[state.status]
        data = {"device_id": device.id, "reason": state.reason or "", "loan_id": device.loan_id or ""}
        self.storage.on_commit(lambda: self.notifier.dispatch(notification_type, device.customer_id, data))

    def _save_device(self, device: Device) -> None:
        self.storage.save(self.devices_table, device.id, device.to_dict())

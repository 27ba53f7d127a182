"""
Payment Module

Payment lifecycle (record, verify, reject) and the Allocation Engine.

Only verified payments contribute to installment paid amounts. Allocation of
one payment, including every Allocation row and the consequent installment and
loan recomputes, runs in a single transaction. Over-allocation beyond a
payment's or an installment's remaining amount is rejected before any write.
Rejecting a payment reverses its allocations and recomputes each affected
installment from the remaining verified allocations.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .actors import Actor
from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency
from .exceptions import InvalidStateError, InvariantViolationError, ValidationError, EntityNotFoundError
from .loans import Installment, InstallmentStatus, LoanManager, LoanStatus
from .notifications import NotificationDispatcher, NotificationType
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("device_finance.payments")


class PaymentMethod(Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"
    OTHER = "other"


class VerificationStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class Payment(StorageRecord):
    """A money receipt against a loan"""
    loan_id: str
    amount: Money
    payment_date: date
    method: PaymentMethod
    verification_status: VerificationStatus = VerificationStatus.PENDING
    recorded_by: Optional[Actor] = None
    verified_by: Optional[Actor] = None
    verified_at: Optional[datetime] = None
    reference_number: Optional[str] = None
    bank_source: Optional[str] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


@dataclass
class Allocation(StorageRecord):
    """Portion of a payment credited to one installment"""
    payment_id: str
    installment_id: str
    loan_id: str
    amount: Money


@dataclass
class AllocationResult:
    """Allocations written for a payment and the amount left over"""
    payment_id: str
    allocations: List[Allocation]
    unallocated_amount: Money

    @property
    def allocated_amount(self) -> Money:
        total = Money.zero(self.unallocated_amount.currency)
        for allocation in self.allocations:
            total = total + allocation.amount
        return total


@dataclass
class ReversalResult:
    payment_id: str
    reversed_allocations: int = 0
    affected_installments: List[str] = field(default_factory=list)


@dataclass
class PaymentResult:
    """Outcome of verify/mark-paid: the payment and its allocation, if any"""
    payment: Payment
    allocation: Optional[AllocationResult] = None


class PaymentManager:
    """
    Payment workflow and Allocation Engine
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_manager: LoanManager,
        notifier: Optional[NotificationDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.notifier = notifier

        self.payments_table = "payments"
        self.allocations_table = "payment_allocations"

    # Payment workflow

    def record_payment(
        self,
        loan_id: str,
        amount,
        actor: Actor,
        method: PaymentMethod = PaymentMethod.CASH,
        payment_date: Optional[date] = None,
        reference_number: Optional[str] = None,
        bank_source: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Payment:
        """Record a pending payment awaiting verification"""
        with self.storage.atomic():
            payment = self._create_payment(loan_id, amount, actor, method, payment_date,
                                           reference_number, bank_source, notes)
        logger.info(f"Recorded payment {payment.id} of {payment.amount.to_string()} for loan {loan_id}")
        return payment

    def verify_payment(
        self,
        payment_id: str,
        actor: Actor,
        reference_number: Optional[str] = None,
        bank_source: Optional[str] = None,
        target_installment_id: Optional[str] = None,
        today: Optional[date] = None
    ) -> PaymentResult:
        """
        Mark a pending payment verified. With a target installment the payment
        is allocated from that installment forward in the same transaction.
        """
        payment = self.get_payment(payment_id)
        with self.storage.lock(self._loan_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                self._mark_verified(payment, actor, reference_number, bank_source)

                allocation = None
                if target_installment_id is not None:
                    order = self.default_allocation_order(payment.loan_id, target_installment_id)
                    allocation = self.allocate(payment.id, actor, [i.id for i in order], today)

                self._notify_after_commit(NotificationType.PAYMENT_CONFIRMED, payment,
                                          {"amount": payment.amount.to_string()})
        return PaymentResult(payment=payment, allocation=allocation)

    def reject_payment(
        self,
        payment_id: str,
        actor: Actor,
        reason: str,
        today: Optional[date] = None
    ) -> Payment:
        """Reject a pending or verified payment and reverse its allocations"""
        payment = self.get_payment(payment_id)
        with self.storage.lock(self._loan_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                if payment.verification_status == VerificationStatus.REJECTED:
                    raise InvalidStateError(f"Payment {payment_id} is already rejected")

                previous = payment.verification_status
                payment.verification_status = VerificationStatus.REJECTED
                payment.rejection_reason = reason
                payment.updated_at = datetime.now(timezone.utc)
                self._save_payment(payment)
                self.audit_trail.record(
                    AuditEventType.PAYMENT_REJECTED, "payment", payment.id,
                    {"loan_id": payment.loan_id, "previous_status": previous, "reason": reason},
                    actor
                )

                self.reverse_on_reject(payment.id, actor, today)
                self._notify_after_commit(NotificationType.PAYMENT_REJECTED, payment,
                                          {"amount": payment.amount.to_string(), "reason": reason})

        logger.info(f"Rejected payment {payment_id}: {reason}")
        return payment

    def mark_installment_paid(
        self,
        installment_id: str,
        actor: Actor,
        amount=None,
        method: PaymentMethod = PaymentMethod.CASH,
        payment_date: Optional[date] = None,
        reference_number: Optional[str] = None,
        bank_source: Optional[str] = None,
        notes: Optional[str] = None,
        today: Optional[date] = None
    ) -> PaymentResult:
        """
        Administrative fast path: record a payment, verify it and allocate it
        from the installment forward, all in one transaction.

        Args:
            amount: Defaults to the installment's remaining amount
        """
        installment = self.loan_manager.get_installment(installment_id)
        with self.storage.lock(self._loan_key(installment.loan_id)):
            with self.storage.atomic():
                installment = self.loan_manager.get_installment(installment_id)
                if installment.status == InstallmentStatus.PAID:
                    raise InvalidStateError(f"Installment {installment_id} is already paid")
                if installment.status == InstallmentStatus.CANCELLED:
                    raise InvalidStateError(f"Installment {installment_id} is cancelled")

                if amount is None:
                    amount = installment.amount - self._allocated_to_installment(installment)

                payment = self._create_payment(
                    installment.loan_id, amount, actor, method, payment_date,
                    reference_number, bank_source, notes or f"Marked paid for installment #{installment.sequence}")
                self._mark_verified(payment, actor, reference_number, bank_source)

                order = self.default_allocation_order(installment.loan_id, installment.id)
                allocation = self.allocate(payment.id, actor, [i.id for i in order], today)

                self.audit_trail.record(
                    AuditEventType.INSTALLMENT_MARKED_PAID, "installment", installment.id,
                    {
                        "payment_id": payment.id,
                        "amount": payment.amount.to_string(),
                        "unallocated_amount": allocation.unallocated_amount.to_string(),
                    },
                    actor
                )
                self._notify_after_commit(NotificationType.PAYMENT_CONFIRMED, payment,
                                          {"amount": payment.amount.to_string()})

        return PaymentResult(payment=payment, allocation=allocation)

    # Allocation Engine

    def default_allocation_order(self, loan_id: str,
                                 from_installment_id: Optional[str] = None) -> List[Installment]:
        """
        Unpaid installments of the loan by sequence number, starting at
        from_installment_id when given.
        """
        start = 0
        if from_installment_id is not None:
            target = self.loan_manager.get_installment(from_installment_id)
            if target.loan_id != loan_id:
                raise InvariantViolationError(
                    f"Installment {from_installment_id} does not belong to loan {loan_id}")
            start = target.sequence
        return [
            i for i in self.loan_manager.get_installments(loan_id)
            if i.sequence >= start
            and i.status in (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)
        ]

    def allocate(
        self,
        payment_id: str,
        actor: Actor,
        installment_ids: Optional[List[str]] = None,
        today: Optional[date] = None
    ) -> AllocationResult:
        """
        Allocate a verified payment across installments in the given order.

        Each installment receives min(remaining to allocate, installment
        remaining). Whatever is left after the last installment is reported
        as ``unallocated_amount``.

        Raises:
            InvariantViolationError: Payment not verified, or an installment
                belongs to another loan. Nothing is written.
        """
        payment = self.get_payment(payment_id)
        with self.storage.lock(self._loan_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                self._require_verified(payment)

                if installment_ids is None:
                    installments = self.default_allocation_order(payment.loan_id)
                else:
                    installments = self._load_targets(payment, installment_ids)

                remaining = self.payment_unallocated_amount(payment)
                plan: List[Tuple[Installment, Money]] = []
                for installment in installments:
                    if not remaining.is_positive():
                        break
                    if installment.status == InstallmentStatus.CANCELLED:
                        continue
                    open_amount = installment.amount - self._allocated_to_installment(installment)
                    share = remaining.min(open_amount)
                    if share.is_positive():
                        plan.append((installment, share))
                        remaining = remaining - share

                allocations = self._write_allocations(payment, plan, actor, today)

        result = AllocationResult(payment_id=payment.id, allocations=allocations, unallocated_amount=remaining)
        if remaining.is_positive():
            logger.info(f"Payment {payment.id} left {remaining.to_string()} unallocated")
        return result

    def allocate_amounts(
        self,
        payment_id: str,
        amounts: Dict[str, object],
        actor: Actor,
        today: Optional[date] = None
    ) -> AllocationResult:
        """
        Allocate explicit amounts per installment id.

        Raises:
            InvariantViolationError: Any amount is non-positive, exceeds the
                installment's remaining amount, or the total exceeds the
                payment's unallocated amount. Nothing is written.
        """
        payment = self.get_payment(payment_id)
        with self.storage.lock(self._loan_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                self._require_verified(payment)
                installments = self._load_targets(payment, list(amounts.keys()))

                currency = payment.amount.currency
                remaining = self.payment_unallocated_amount(payment)
                plan: List[Tuple[Installment, Money]] = []
                for installment in installments:
                    share = self._to_money(amounts[installment.id], currency)
                    if not share.is_positive():
                        raise InvariantViolationError(
                            f"Allocation to installment {installment.id} must be positive")
                    if installment.status == InstallmentStatus.CANCELLED:
                        raise InvariantViolationError(f"Installment {installment.id} is cancelled")
                    open_amount = installment.amount - self._allocated_to_installment(installment)
                    if share > open_amount:
                        raise InvariantViolationError(
                            f"Allocation {share.to_string()} exceeds installment #{installment.sequence} "
                            f"remaining {open_amount.to_string()}")
                    if share > remaining:
                        raise InvariantViolationError(
                            f"Allocations exceed payment {payment.id} unallocated amount")
                    plan.append((installment, share))
                    remaining = remaining - share

                allocations = self._write_allocations(payment, plan, actor, today)

        return AllocationResult(payment_id=payment.id, allocations=allocations, unallocated_amount=remaining)

    def reverse_on_reject(self, payment_id: str, actor: Actor,
                          today: Optional[date] = None) -> ReversalResult:
        """
        Remove a rejected payment's allocations and recompute every affected
        installment from its remaining verified allocations. Running it again
        changes nothing.
        """
        payment = self.get_payment(payment_id)
        with self.storage.lock(self._loan_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                if payment.verification_status != VerificationStatus.REJECTED:
                    raise InvalidStateError(
                        f"Payment {payment_id} is {payment.verification_status.value}, not rejected")

                result = ReversalResult(payment_id=payment.id)
                for allocation in self.get_payment_allocations(payment.id):
                    self.storage.delete(self.allocations_table, allocation.id)
                    result.reversed_allocations += 1
                    if allocation.installment_id not in result.affected_installments:
                        result.affected_installments.append(allocation.installment_id)
                    self.audit_trail.record(
                        AuditEventType.ALLOCATION_REVERSED, "payment", payment.id,
                        {
                            "allocation_id": allocation.id,
                            "installment_id": allocation.installment_id,
                            "amount": allocation.amount.to_string(),
                        },
                        actor
                    )

                for installment_id in result.affected_installments:
                    installment = self.loan_manager.get_installment(installment_id)
                    self.loan_manager.apply_paid_amount(
                        installment, self.verified_total(installment), actor, today)

                if result.affected_installments:
                    self.loan_manager.recompute_loan_status(payment.loan_id, actor)

        if result.reversed_allocations:
            logger.info(f"Reversed {result.reversed_allocations} allocations of payment {payment_id}")
        return result

    # Queries

    def get_payment(self, payment_id: str) -> Payment:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise EntityNotFoundError(f"Payment {payment_id} not found")
        return self._payment_from_dict(data)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        return [self._payment_from_dict(d) for d in self.storage.find(self.payments_table, {'loan_id': loan_id})]

    def get_payment_allocations(self, payment_id: str) -> List[Allocation]:
        return [
            self._allocation_from_dict(d)
            for d in self.storage.find(self.allocations_table, {'payment_id': payment_id})
        ]

    def get_installment_allocations(self, installment_id: str) -> List[Allocation]:
        return [
            self._allocation_from_dict(d)
            for d in self.storage.find(self.allocations_table, {'installment_id': installment_id})
        ]

    def payment_unallocated_amount(self, payment: Payment) -> Money:
        remaining = payment.amount
        for allocation in self.get_payment_allocations(payment.id):
            remaining = remaining - allocation.amount
        return remaining

    def verified_total(self, installment: Installment) -> Money:
        """Sum of allocations to the installment from verified payments"""
        total = Money.zero(installment.amount.currency)
        statuses: Dict[str, VerificationStatus] = {}
        for allocation in self.get_installment_allocations(installment.id):
            if allocation.payment_id not in statuses:
                statuses[allocation.payment_id] = self.get_payment(allocation.payment_id).verification_status
            if statuses[allocation.payment_id] == VerificationStatus.VERIFIED:
                total = total + allocation.amount
        return total

    # Internals

    def _create_payment(self, loan_id, amount, actor, method, payment_date,
                        reference_number, bank_source, notes) -> Payment:
        loan = self.loan_manager.get_loan(loan_id)
        if loan.status in (LoanStatus.CANCELLED, LoanStatus.DRAFT):
            raise InvalidStateError(f"Loan {loan_id} is {loan.status.value} and cannot take payments")

        money = self._to_money(amount, loan.currency)
        if not money.is_positive():
            raise ValidationError("Payment amount must be greater than zero")

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=money,
            payment_date=payment_date or now.date(),
            method=method,
            recorded_by=actor,
            reference_number=reference_number,
            bank_source=bank_source,
            notes=notes,
        )
        self._save_payment(payment)
        self.audit_trail.record(
            AuditEventType.PAYMENT_RECORDED, "payment", payment.id,
            {"loan_id": loan_id, "amount": money.to_string(), "method": method},
            actor
        )
        return payment

    def _mark_verified(self, payment: Payment, actor: Actor,
                       reference_number: Optional[str], bank_source: Optional[str]) -> None:
        if payment.verification_status != VerificationStatus.PENDING:
            raise InvalidStateError(
                f"Payment {payment.id} is {payment.verification_status.value}; only pending payments can be verified")
        now = datetime.now(timezone.utc)
        payment.verification_status = VerificationStatus.VERIFIED
        payment.verified_by = actor
        payment.verified_at = now
        payment.reference_number = reference_number or payment.reference_number
        payment.bank_source = bank_source or payment.bank_source
        payment.updated_at = now
        self._save_payment(payment)
        self.audit_trail.record(
            AuditEventType.PAYMENT_VERIFIED, "payment", payment.id,
            {"loan_id": payment.loan_id, "amount": payment.amount.to_string(),
             "reference_number": payment.reference_number},
            actor
        )

    def _require_verified(self, payment: Payment) -> None:
        if not payment.is_verified:
            raise InvariantViolationError(
                f"Payment {payment.id} is {payment.verification_status.value}; only verified payments can be allocated")

    def _load_targets(self, payment: Payment, installment_ids: List[str]) -> List[Installment]:
        installments = []
        seen = set()
        for installment_id in installment_ids:
            if installment_id in seen:
                continue
            seen.add(installment_id)
            installment = self.loan_manager.get_installment(installment_id)
            if installment.loan_id != payment.loan_id:
                raise InvariantViolationError(
                    f"Installment {installment_id} belongs to loan {installment.loan_id}, "
                    f"payment {payment.id} to loan {payment.loan_id}")
            installments.append(installment)
        return installments

    def _allocated_to_installment(self, installment: Installment) -> Money:
        total = Money.zero(installment.amount.currency)
        for allocation in self.get_installment_allocations(installment.id):
            total = total + allocation.amount
        return total

    def _write_allocations(self, payment: Payment, plan: List[Tuple[Installment, Money]],
                           actor: Actor, today: Optional[date]) -> List[Allocation]:
        allocations = []
        for installment, share in plan:
            now = datetime.now(timezone.utc)
            allocation = Allocation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_id=payment.id,
                installment_id=installment.id,
                loan_id=payment.loan_id,
                amount=share,
            )
            self.storage.save(self.allocations_table, allocation.id, self._allocation_to_dict(allocation))
            allocations.append(allocation)
            self.audit_trail.record(
                AuditEventType.PAYMENT_ALLOCATED, "payment", payment.id,
                {
                    "allocation_id": allocation.id,
                    "installment_id": installment.id,
                    "sequence": installment.sequence,
                    "amount": share.to_string(),
                },
                actor
            )
            self.loan_manager.apply_paid_amount(installment, self.verified_total(installment), actor, today)

        if plan:
            self.loan_manager.recompute_loan_status(payment.loan_id, actor)
        return allocations

    def _notify_after_commit(self, notification_type: NotificationType, payment: Payment,
                             data: Dict[str, str]) -> None:
        if self.notifier is None:
            return
        customer_id = self.loan_manager.get_loan(payment.loan_id).customer_id
        payload = dict(data, payment_id=payment.id, loan_id=payment.loan_id)
        self.storage.on_commit(lambda: self.notifier.dispatch(notification_type, customer_id, payload))

    @staticmethod
    def _loan_key(loan_id: str) -> str:
        return f"loan:{loan_id}"

    @staticmethod
    def _to_money(amount, currency: Currency) -> Money:
        if isinstance(amount, Money):
            if amount.currency != currency:
                raise ValidationError(f"Amount currency {amount.currency.code} does not match loan {currency.code}")
            return amount
        return Money(Decimal(str(amount)), currency)

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _payment_to_dict(self, payment: Payment) -> Dict:
        result = payment.to_dict()
        result['amount'] = str(payment.amount.amount)
        result['currency'] = payment.amount.currency.code
        result['payment_date'] = payment.payment_date.isoformat()
        result['method'] = payment.method.value
        result['verification_status'] = payment.verification_status.value
        result['recorded_by'] = payment.recorded_by.to_dict() if payment.recorded_by else None
        result['verified_by'] = payment.verified_by.to_dict() if payment.verified_by else None
        result['verified_at'] = payment.verified_at.isoformat() if payment.verified_at else None
        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency.from_code(data['currency'])),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            verification_status=VerificationStatus(data['verification_status']),
            recorded_by=Actor.from_dict(data.get('recorded_by')),
            verified_by=Actor.from_dict(data.get('verified_by')),
            verified_at=datetime.fromisoformat(data['verified_at']) if data.get('verified_at') else None,
            reference_number=data.get('reference_number'),
            bank_source=data.get('bank_source'),
            notes=data.get('notes'),
            rejection_reason=data.get('rejection_reason'),
        )

    def _allocation_to_dict(self, allocation: Allocation) -> Dict:
        result = allocation.to_dict()
        result['amount'] = str(allocation.amount.amount)
        result['currency'] = allocation.amount.currency.code
        return result

    def _allocation_from_dict(self, data: Dict) -> Allocation:
        return Allocation(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            installment_id=data['installment_id'],
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency.from_code(data['currency'])),
        )

"""
Loan Module

Loan finalization, the installment ledger and status derivation. Installment
and loan statuses are cached derived values: they are recomputed explicitly
after every mutation that can affect them (Payment -> Installment -> Loan),
never through implicit callbacks.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING
from enum import Enum
import logging
import uuid

from .actors import Actor
from .amortization import AmortizationCalculator
from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency
from .exceptions import EntityNotFoundError, InvalidStateError, ValidationError
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .devices import DeviceLockService


logger = logging.getLogger("device_finance.loans")

LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "installments"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DRAFT = "draft"          # Written, installments not yet derived
    ACTIVE = "active"        # Some installments pending, none overdue
    PAID = "paid"            # Nothing pending or overdue
    OVERDUE = "overdue"      # At least one installment overdue
    CANCELLED = "cancelled"  # Explicitly cancelled


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


@dataclass
class Loan(StorageRecord):
    """A financed phone purchase"""
    customer_id: str
    device_id: Optional[str]
    total_amount: Money                 # Phone price
    approved_amount: Money              # Approved credit ceiling
    down_payment_percentage: int
    down_payment_amount: Money
    financed_amount: Money
    interest_rate: Decimal              # Bi-weekly rate as a fraction, e.g. 0.14
    installment_amount: Money
    term: int                           # Number of bi-weekly installments
    start_date: date
    status: LoanStatus = LoanStatus.DRAFT
    cancellation_reason: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.total_amount.currency

    @property
    def is_open(self) -> bool:
        return self.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


@dataclass
class Installment(StorageRecord):
    """One scheduled bi-weekly obligation within a loan"""
    loan_id: str
    sequence: int
    due_date: date
    amount: Money
    paid_amount: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None

    @property
    def remaining_amount(self) -> Money:
        remaining = self.amount - self.paid_amount
        if remaining.is_negative():
            return Money.zero(self.amount.currency)
        return remaining

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount >= self.amount

    def days_overdue(self, as_of: date) -> int:
        """Days past the due date; 0 when paid, cancelled or not yet due"""
        if self.status in (InstallmentStatus.PAID, InstallmentStatus.CANCELLED):
            return 0
        return max((as_of - self.due_date).days, 0)


def derive_installment_status(installment: Installment, paid_amount: Money,
                              today: date) -> InstallmentStatus:
    """Status for an installment carrying paid_amount, as of today"""
    if installment.status == InstallmentStatus.CANCELLED:
        return InstallmentStatus.CANCELLED
    if paid_amount >= installment.amount:
        return InstallmentStatus.PAID
    if installment.due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def derive_loan_status(statuses: Iterable[InstallmentStatus]) -> LoanStatus:
    """
    Overdue if any installment is overdue, else active if any is pending,
    else paid. Cancelled installments are ignored.
    """
    statuses = [s for s in statuses if s != InstallmentStatus.CANCELLED]
    if InstallmentStatus.OVERDUE in statuses:
        return LoanStatus.OVERDUE
    if InstallmentStatus.PENDING in statuses:
        return LoanStatus.ACTIVE
    return LoanStatus.PAID


def _money_fields(record, fields: List[str], result: Dict) -> None:
    for name in fields:
        result[name] = str(getattr(record, name).amount)


def loan_to_dict(loan: Loan) -> Dict:
    result = loan.to_dict()
    _money_fields(loan, ['total_amount', 'approved_amount', 'down_payment_amount',
                         'financed_amount', 'installment_amount'], result)
    result['currency'] = loan.currency.code
    result['interest_rate'] = str(loan.interest_rate)
    result['start_date'] = loan.start_date.isoformat()
    result['status'] = loan.status.value
    return result


def loan_from_dict(data: Dict) -> Loan:
    currency = Currency.from_code(data['currency'])

    def get_money(name: str) -> Money:
        return Money(Decimal(data[name]), currency)

    return Loan(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        customer_id=data['customer_id'],
        device_id=data.get('device_id'),
        total_amount=get_money('total_amount'),
        approved_amount=get_money('approved_amount'),
        down_payment_percentage=data['down_payment_percentage'],
        down_payment_amount=get_money('down_payment_amount'),
        financed_amount=get_money('financed_amount'),
        interest_rate=Decimal(data['interest_rate']),
        installment_amount=get_money('installment_amount'),
        term=data['term'],
        start_date=date.fromisoformat(data['start_date']),
        status=LoanStatus(data['status']),
        cancellation_reason=data.get('cancellation_reason'),
    )


def installment_to_dict(installment: Installment) -> Dict:
    result = installment.to_dict()
    _money_fields(installment, ['amount', 'paid_amount'], result)
    result['currency'] = installment.amount.currency.code
    result['due_date'] = installment.due_date.isoformat()
    result['status'] = installment.status.value
    result['paid_date'] = installment.paid_date.isoformat() if installment.paid_date else None
    return result


def installment_from_dict(data: Dict) -> Installment:
    currency = Currency.from_code(data['currency'])
    return Installment(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        loan_id=data['loan_id'],
        sequence=data['sequence'],
        due_date=date.fromisoformat(data['due_date']),
        amount=Money(Decimal(data['amount']), currency),
        paid_amount=Money(Decimal(data['paid_amount']), currency),
        status=InstallmentStatus(data['status']),
        paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
    )


def installments_in_status(storage: StorageInterface, status: InstallmentStatus) -> List[Installment]:
    """All installments currently in status"""
    return [installment_from_dict(d) for d in storage.find(INSTALLMENTS_TABLE, {'status': status.value})]


def overdue_installments(storage: StorageInterface, as_of: date, min_days: int = 0) -> List[Installment]:
    """Overdue installments at least min_days past due as of the given date"""
    return [
        i for i in installments_in_status(storage, InstallmentStatus.OVERDUE)
        if (as_of - i.due_date).days >= min_days
    ]


class LoanManager:
    """
    Manages loan finalization, the installment ledger and status recompute
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        devices: Optional['DeviceLockService'] = None,
        calculator: Optional[AmortizationCalculator] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.devices = devices
        self.calculator = calculator or AmortizationCalculator()

        self.loans_table = LOANS_TABLE
        self.installments_table = INSTALLMENTS_TABLE

    def finalize_loan(
        self,
        customer_id: str,
        device_id: Optional[str],
        phone_price,
        approved_amount,
        down_payment_percentage: int,
        term: int,
        date_of_birth: Optional[date],
        start_date: date,
        actor: Actor,
        as_of: Optional[date] = None
    ) -> Loan:
        """
        Finalize a financed purchase: loan, full installment schedule and
        device assignment are written in one transaction.

        Raises:
            ValidationError: Calculator rejected the request (``errors`` holds
                the constraint violations) or the approved ceiling is too low
            EntityNotFoundError: Unknown device
            InvalidStateError: Device already backs another loan, or a device
                was given but no device registry is configured
        """
        as_of = as_of or date.today()
        result = self.calculator.generate_schedule(
            phone_price, down_payment_percentage, term, date_of_birth, start_date, as_of)
        if not result.success:
            raise ValidationError("Financing request rejected", errors=result.errors)

        currency = self.calculator.currency
        if isinstance(approved_amount, Money):
            approved = approved_amount
        else:
            try:
                approved = Money(Decimal(str(approved_amount)), currency)
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Approved amount is not a valid amount: {approved_amount!r}")
        if approved < result.phone_price:
            raise ValidationError(
                f"Approved amount {approved.to_string()} is below phone price {result.phone_price.to_string()}")

        if device_id is not None:
            if self.devices is None:
                raise InvalidStateError(
                    f"Cannot bind device {device_id}: loan manager has no device registry")
            device = self.devices.get_device(device_id)
            if device.loan_id:
                raise InvalidStateError(f"Device {device_id} already assigned to loan {device.loan_id}")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            device_id=device_id,
            total_amount=result.phone_price,
            approved_amount=approved,
            down_payment_percentage=result.down_payment_percentage,
            down_payment_amount=result.down_payment_amount,
            financed_amount=result.financed_amount,
            interest_rate=result.bi_weekly_rate,
            installment_amount=result.installment_amount,
            term=result.term,
            start_date=result.start_date,
            status=LoanStatus.DRAFT,
        )

        with self.storage.atomic():
            self._save_loan(loan)
            for entry in result.schedule:
                installment = Installment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    sequence=entry.sequence,
                    due_date=entry.due_date,
                    amount=entry.amount,
                    paid_amount=Money.zero(currency),
                )
                self._save_installment(installment)

            if device_id is not None:
                self.devices.assign_to_loan(device_id, loan.id, customer_id, actor)

            self.audit_trail.record(
                AuditEventType.LOAN_FINALIZED, "loan", loan.id,
                {
                    "customer_id": customer_id,
                    "device_id": device_id,
                    "total_amount": loan.total_amount.to_string(),
                    "financed_amount": loan.financed_amount.to_string(),
                    "installment_amount": loan.installment_amount.to_string(),
                    "term": loan.term,
                    "interest_rate": str(loan.interest_rate),
                },
                actor
            )
            loan.status = self.recompute_loan_status(loan.id, actor)

        logger.info(f"Finalized loan {loan.id} for customer {customer_id}: "
                    f"{loan.term} installments of {loan.installment_amount.to_string()}")
        return loan

    def cancel_loan(self, loan_id: str, actor: Actor, reason: str) -> Loan:
        """Cancel a loan and every installment not yet paid"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status == LoanStatus.CANCELLED:
                raise InvalidStateError(f"Loan {loan_id} is already cancelled")
            if loan.status == LoanStatus.PAID:
                raise InvalidStateError(f"Loan {loan_id} is paid and cannot be cancelled")

            for installment in self.get_installments(loan_id):
                if installment.status != InstallmentStatus.PAID:
                    previous = installment.status
                    installment.status = InstallmentStatus.CANCELLED
                    installment.updated_at = datetime.now(timezone.utc)
                    self._save_installment(installment)
                    self._audit_installment_change(installment, previous, actor)

            previous_status = loan.status
            loan.status = LoanStatus.CANCELLED
            loan.cancellation_reason = reason
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.audit_trail.record(
                AuditEventType.LOAN_CANCELLED, "loan", loan.id,
                {"previous_status": previous_status, "reason": reason},
                actor
            )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise EntityNotFoundError(f"Loan {loan_id} not found")
        return loan_from_dict(data)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        return [loan_from_dict(d) for d in self.storage.find(self.loans_table, {'customer_id': customer_id})]

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise EntityNotFoundError(f"Installment {installment_id} not found")
        return installment_from_dict(data)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by sequence number"""
        installments = [
            installment_from_dict(d)
            for d in self.storage.find(self.installments_table, {'loan_id': loan_id})
        ]
        return sorted(installments, key=lambda i: i.sequence)

    def apply_paid_amount(self, installment: Installment, paid_amount: Money,
                          actor: Actor, today: Optional[date] = None) -> bool:
        """
        Store paid_amount on the installment and re-derive its status.

        Returns True when the status changed. The caller owns the transaction
        and the follow-up loan recompute.
        """
        if paid_amount > installment.amount:
            # Allocation guards make this unreachable; fail loudly rather than overpay
            raise InvalidStateError(
                f"Installment {installment.id} paid amount {paid_amount.to_string()} "
                f"exceeds {installment.amount.to_string()}")

        today = today or date.today()
        previous = installment.status
        status = derive_installment_status(installment, paid_amount, today)

        if paid_amount == installment.paid_amount and status == previous:
            return False

        installment.paid_amount = paid_amount
        installment.status = status
        if status == InstallmentStatus.PAID:
            installment.paid_date = installment.paid_date or today
        else:
            installment.paid_date = None
        installment.updated_at = datetime.now(timezone.utc)
        self._save_installment(installment)

        if status != previous:
            self._audit_installment_change(installment, previous, actor)
            return True
        return False

    def refresh_installment_status(self, installment: Installment, actor: Actor,
                                   today: Optional[date] = None) -> bool:
        """Re-derive status against today's date without touching paid_amount"""
        return self.apply_paid_amount(installment, installment.paid_amount, actor, today)

    def recompute_loan_status(self, loan_id: str, actor: Actor) -> LoanStatus:
        """
        Derive the loan status from its installment set and persist it.
        Cancelled loans and loans without installments keep their status.
        """
        loan = self.get_loan(loan_id)
        if loan.status == LoanStatus.CANCELLED:
            return loan.status

        installments = self.get_installments(loan_id)
        if not installments:
            return loan.status

        status = derive_loan_status(i.status for i in installments)
        if status != loan.status:
            previous = loan.status
            loan.status = status
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.audit_trail.record(
                AuditEventType.LOAN_STATUS_CHANGED, "loan", loan.id,
                {"previous_status": previous, "new_status": status},
                actor
            )
            logger.info(f"Loan {loan.id} status {previous.value} -> {status.value}")
        return status

    def _audit_installment_change(self, installment: Installment,
                                  previous: InstallmentStatus, actor: Actor) -> None:
        self.audit_trail.record(
            AuditEventType.INSTALLMENT_STATUS_CHANGED, "installment", installment.id,
            {
                "loan_id": installment.loan_id,
                "sequence": installment.sequence,
                "previous_status": previous,
                "new_status": installment.status,
                "paid_amount": installment.paid_amount.to_string(),
            },
            actor
        )

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan_to_dict(loan))

    def _save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment_to_dict(installment))

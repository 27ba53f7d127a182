"""
Amortization Calculator Module

Computes the down payment, financed amount, bi-weekly installment amount and
due-date schedule for a financed phone. Policy violations (age band, restricted
down payment for an age group, financed ceiling, disallowed terms) are returned
as a list of constraint violations rather than raised, and so is input that
cannot be read as an amount, a whole number or a date.

Installment formula (annuity): PMT = P * r * (1+r)^n / ((1+r)^n - 1), with
P = financed amount, r = bi-weekly table rate, n = number of installments.
"""

from decimal import Decimal, InvalidOperation
from datetime import date, datetime, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency


PERIOD_DAYS = 14

VALID_DOWN_PAYMENT_PERCENTAGES = (30, 40, 50)
VALID_TERMS = (6, 8, 10, 12)

# Bi-weekly rates in percent, keyed by down payment % then number of installments
RATE_TABLE: Dict[int, Dict[int, Decimal]] = {
    30: {6: Decimal('14.0'), 8: Decimal('13.5'), 10: Decimal('13.0'), 12: Decimal('12.5')},
    40: {6: Decimal('13.0'), 8: Decimal('12.5'), 10: Decimal('12.0'), 12: Decimal('11.5')},
    50: {6: Decimal('12.0'), 8: Decimal('11.5'), 10: Decimal('11.0'), 12: Decimal('10.5')},
}

MIN_AGE = 21
MAX_AGE = 60
SENIOR_AGE_MIN = 50  # 50-60 form age group 2
SENIOR_DOWN_PAYMENT_PERCENTAGES = (40, 50)
MAX_FINANCED_BY_AGE_GROUP = {
    1: Decimal('3500.00'),
    2: Decimal('3000.00'),
}
MAX_PHONE_PRICE = Decimal('1000000')


class ConstraintCode(Enum):
    """Policy constraints a financing request can violate"""
    INPUT_INVALID = "input_invalid"
    PHONE_PRICE_INVALID = "phone_price_invalid"
    DOWN_PAYMENT_PERCENTAGE_INVALID = "down_payment_percentage_invalid"
    TERM_INVALID = "term_invalid"
    DATE_OF_BIRTH_REQUIRED = "date_of_birth_required"
    AGE_OUT_OF_RANGE = "age_out_of_range"
    DOWN_PAYMENT_RESTRICTED_FOR_AGE = "down_payment_restricted_for_age"
    FINANCED_AMOUNT_EXCEEDS_CEILING = "financed_amount_exceeds_ceiling"
    START_DATE_IN_PAST = "start_date_in_past"


@dataclass(frozen=True)
class ConstraintViolation:
    code: ConstraintCode
    message: str


@dataclass
class ScheduleEntry:
    """One scheduled bi-weekly obligation"""
    sequence: int
    due_date: date
    amount: Money
    status: str = "pending"


@dataclass
class ScheduleResult:
    """Outcome of a schedule calculation: either figures and schedule, or errors"""
    errors: List[ConstraintViolation] = field(default_factory=list)
    phone_price: Optional[Money] = None
    down_payment_percentage: Optional[int] = None
    down_payment_amount: Optional[Money] = None
    financed_amount: Optional[Money] = None
    bi_weekly_rate: Optional[Decimal] = None  # as a fraction, e.g. 0.14
    installment_amount: Optional[Money] = None
    term: Optional[int] = None
    total_interest: Optional[Money] = None
    total_payment: Optional[Money] = None
    age: Optional[int] = None
    age_group: Optional[int] = None
    start_date: Optional[date] = None
    schedule: List[ScheduleEntry] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def bi_weekly_rate_percentage(self) -> Optional[Decimal]:
        if self.bi_weekly_rate is None:
            return None
        return self.bi_weekly_rate * 100

    def error_codes(self) -> List[ConstraintCode]:
        return [e.code for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "errors": [{"code": e.code.value, "message": e.message} for e in self.errors]}
        return {
            "success": True,
            "phone_price": str(self.phone_price.amount),
            "down_payment_percentage": self.down_payment_percentage,
            "down_payment_amount": str(self.down_payment_amount.amount),
            "financed_amount": str(self.financed_amount.amount),
            "bi_weekly_rate": str(self.bi_weekly_rate),
            "installment_amount": str(self.installment_amount.amount),
            "term": self.term,
            "total_interest": str(self.total_interest.amount),
            "total_payment": str(self.total_payment.amount),
            "age": self.age,
            "age_group": self.age_group,
            "schedule": [
                {
                    "sequence": e.sequence,
                    "due_date": e.due_date.isoformat(),
                    "amount": str(e.amount.amount),
                    "status": e.status,
                }
                for e in self.schedule
            ],
        }


def _to_decimal(value) -> Optional[Decimal]:
    """Finite Decimal from a Money, number or numeric string; None otherwise"""
    if isinstance(value, Money):
        return value.amount
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _to_int(value) -> Optional[int]:
    """Whole number from an int or integral numeric string; None otherwise"""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    amount = _to_decimal(value)
    if amount is None or amount != amount.to_integral_value():
        return None
    return int(amount)


def _to_date(value) -> Optional[date]:
    """Date from a date, datetime or ISO ``YYYY-MM-DD`` string; None otherwise"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def calculate_age(date_of_birth: date, as_of: date) -> int:
    """Completed years between date_of_birth and as_of"""
    age = as_of.year - date_of_birth.year
    if (as_of.month, as_of.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def age_group_for(age: Optional[int]) -> Optional[int]:
    """1 for 21-49, 2 for 50-60, None outside the financed band"""
    if age is None or age < MIN_AGE or age > MAX_AGE:
        return None
    return 2 if age >= SENIOR_AGE_MIN else 1


def lookup_rate(down_payment_percentage: int, term: int) -> Optional[Decimal]:
    """Bi-weekly rate as a fraction, or None for combinations outside the table"""
    percent = RATE_TABLE.get(down_payment_percentage, {}).get(term)
    if percent is None:
        return None
    return percent / Decimal('100')


def annuity_payment(principal: Decimal, rate: Decimal, periods: int) -> Decimal:
    """Unrounded periodic payment; straight division when the rate is zero"""
    if rate == Decimal('0'):
        return principal / Decimal(periods)
    factor = (Decimal('1') + rate) ** periods
    return principal * rate * factor / (factor - Decimal('1'))


def build_schedule(start_date: date, term: int, amount: Money) -> List[ScheduleEntry]:
    """Due dates fall every 14 days, the first one 14 days after start_date"""
    return [
        ScheduleEntry(
            sequence=n,
            due_date=start_date + timedelta(days=PERIOD_DAYS * n),
            amount=amount,
        )
        for n in range(1, term + 1)
    ]


class AmortizationCalculator:
    """Bi-weekly phone financing calculator"""

    def __init__(self, currency: Currency = Currency.HNL):
        self.currency = currency

    def generate_schedule(
        self,
        phone_price,
        down_payment_percentage: int,
        term: int,
        date_of_birth: Optional[date],
        start_date: date,
        as_of: Optional[date] = None
    ) -> ScheduleResult:
        """
        Validate a financing request and compute its installment schedule.

        Args:
            phone_price: Phone price (Decimal, str or Money)
            down_payment_percentage: One of 30, 40, 50
            term: Number of bi-weekly installments, one of 6, 8, 10, 12
            date_of_birth: Customer's date of birth (date or ISO string)
            start_date: Loan start date (date or ISO string)
            as_of: Reference date for age and start-date checks (defaults to today)

        Returns:
            ScheduleResult; ``errors`` is non-empty when the request is rejected.
            Unparseable input is reported as ``INPUT_INVALID``, never raised.
        """
        as_of = as_of or date.today()
        errors: List[ConstraintViolation] = []

        price = _to_decimal(phone_price)
        if price is None:
            errors.append(ConstraintViolation(
                ConstraintCode.INPUT_INVALID, f"Phone price is not a valid amount: {phone_price!r}"))
        elif price <= 0:
            errors.append(ConstraintViolation(
                ConstraintCode.PHONE_PRICE_INVALID, "Phone price must be greater than zero"))
        elif price > MAX_PHONE_PRICE:
            errors.append(ConstraintViolation(
                ConstraintCode.PHONE_PRICE_INVALID, "Phone price exceeds the maximum allowed"))

        percentage = _to_int(down_payment_percentage)
        if percentage is None:
            errors.append(ConstraintViolation(
                ConstraintCode.INPUT_INVALID,
                f"Down payment percentage is not a whole number: {down_payment_percentage!r}"))
        elif percentage not in VALID_DOWN_PAYMENT_PERCENTAGES:
            errors.append(ConstraintViolation(
                ConstraintCode.DOWN_PAYMENT_PERCENTAGE_INVALID,
                f"Down payment must be one of {', '.join(f'{p}%' for p in VALID_DOWN_PAYMENT_PERCENTAGES)}"))

        installments = _to_int(term)
        if installments not in VALID_TERMS:
            errors.append(ConstraintViolation(
                ConstraintCode.TERM_INVALID,
                f"Term must be one of {', '.join(str(t) for t in VALID_TERMS)} bi-weekly installments"))

        age = None
        birth_date = _to_date(date_of_birth)
        if date_of_birth is None or date_of_birth == "":
            errors.append(ConstraintViolation(
                ConstraintCode.DATE_OF_BIRTH_REQUIRED, "Date of birth is required"))
        elif birth_date is None:
            errors.append(ConstraintViolation(
                ConstraintCode.INPUT_INVALID, f"Date of birth is not a valid date: {date_of_birth!r}"))
        else:
            age = calculate_age(birth_date, as_of)
            if age < MIN_AGE:
                errors.append(ConstraintViolation(
                    ConstraintCode.AGE_OUT_OF_RANGE, f"Customer must be at least {MIN_AGE} years old"))
            elif age > MAX_AGE:
                errors.append(ConstraintViolation(
                    ConstraintCode.AGE_OUT_OF_RANGE, f"Customer must be at most {MAX_AGE} years old"))

        group = age_group_for(age)
        if group == 2 and percentage is not None and percentage not in SENIOR_DOWN_PAYMENT_PERCENTAGES:
            errors.append(ConstraintViolation(
                ConstraintCode.DOWN_PAYMENT_RESTRICTED_FOR_AGE,
                f"Customers aged {SENIOR_AGE_MIN}-{MAX_AGE} may only choose 40% or 50% down payment"))

        down_payment = financed = None
        if price is not None and percentage is not None:
            down_payment = Money(price * Decimal(percentage) / Decimal('100'), self.currency)
            financed = Money(price, self.currency) - down_payment

            if group is not None and financed.amount > MAX_FINANCED_BY_AGE_GROUP[group]:
                errors.append(ConstraintViolation(
                    ConstraintCode.FINANCED_AMOUNT_EXCEEDS_CEILING,
                    f"Financed amount exceeds the limit for the customer's age "
                    f"({self.currency.code} {MAX_FINANCED_BY_AGE_GROUP[group]})"))

        first_date = _to_date(start_date)
        if first_date is None:
            errors.append(ConstraintViolation(
                ConstraintCode.INPUT_INVALID, f"Start date is not a valid date: {start_date!r}"))
        elif first_date < as_of:
            errors.append(ConstraintViolation(
                ConstraintCode.START_DATE_IN_PAST, "Start date cannot be in the past"))

        if errors:
            return ScheduleResult(errors=errors, age=age, age_group=group)

        rate = lookup_rate(percentage, installments)
        installment = Money(annuity_payment(financed.amount, rate, installments), self.currency)
        total_installments = installment * Decimal(installments)

        return ScheduleResult(
            phone_price=Money(price, self.currency),
            down_payment_percentage=percentage,
            down_payment_amount=down_payment,
            financed_amount=financed,
            bi_weekly_rate=rate,
            installment_amount=installment,
            term=installments,
            total_interest=total_installments - financed,
            total_payment=down_payment + total_installments,
            age=age,
            age_group=group,
            start_date=first_date,
            schedule=build_schedule(first_date, installments, installment),
        )


def generate_schedule(phone_price, down_payment_percentage: int, term: int,
                      date_of_birth: Optional[date], start_date: date,
                      as_of: Optional[date] = None,
                      currency: Currency = Currency.HNL) -> ScheduleResult:
    """Module-level shortcut for AmortizationCalculator.generate_schedule"""
    return AmortizationCalculator(currency).generate_schedule(
        phone_price, down_payment_percentage, term, date_of_birth, start_date, as_of)

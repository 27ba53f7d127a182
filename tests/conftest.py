"""
Shared fixtures: in-memory storage, audit trail, a recording notification
provider and the services wired on top of them. Every test passes explicit
dates so nothing depends on the wall clock.
"""

import pytest
from datetime import date, timedelta

from device_finance.actors import Actor
from device_finance.audit import AuditTrail
from device_finance.devices import DeviceLockService
from device_finance.loans import LoanManager
from device_finance.notifications import ChannelProvider, NotificationChannel, NotificationDispatcher
from device_finance.payments import PaymentManager
from device_finance.storage import InMemoryStorage


START_DATE = date(2025, 1, 6)
CUSTOMER_DOB = date(1990, 5, 17)   # 34 on START_DATE
SENIOR_DOB = date(1970, 3, 1)      # 54 on START_DATE


def days_after_start(days: int) -> date:
    return START_DATE + timedelta(days=days)


class RecordingProvider(ChannelProvider):
    """Channel provider that keeps every notification it is handed"""

    channel = NotificationChannel.LOG

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent = []

    def send(self, notification) -> bool:
        self.sent.append(notification)
        return self.should_succeed

    def types(self):
        return [n.notification_type for n in self.sent]


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def recorder():
    return RecordingProvider()


@pytest.fixture
def notifier(storage, recorder):
    return NotificationDispatcher(storage, providers=[recorder])


@pytest.fixture
def devices(storage, audit_trail, notifier):
    return DeviceLockService(storage, audit_trail, notifier)


@pytest.fixture
def loan_manager(storage, audit_trail, devices):
    return LoanManager(storage, audit_trail, devices)


@pytest.fixture
def payment_manager(storage, audit_trail, loan_manager, notifier):
    return PaymentManager(storage, audit_trail, loan_manager, notifier)


@pytest.fixture
def clerk():
    return Actor.human("clerk-001")


@pytest.fixture
def supervisor():
    return Actor.human("supervisor-001")


@pytest.fixture
def device(devices, clerk):
    return devices.register_device("356938035643809", "Samsung", "Galaxy A15", clerk)


@pytest.fixture
def loan(loan_manager, device, clerk):
    """3000.00 phone, 30% down, 6 bi-weekly installments starting START_DATE"""
    return loan_manager.finalize_loan(
        customer_id="CUST001",
        device_id=device.id,
        phone_price="3000.00",
        approved_amount="3500.00",
        down_payment_percentage=30,
        term=6,
        date_of_birth=CUSTOMER_DOB,
        start_date=START_DATE,
        actor=clerk,
        as_of=START_DATE,
    )


@pytest.fixture
def installments(loan, loan_manager):
    return loan_manager.get_installments(loan.id)

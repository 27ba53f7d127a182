"""
Tests for the payment workflow and the Allocation Engine

Covers allocation conservation, the partial-payment cascade, unallocated
overage, atomic rollback, idempotent reversal on rejection and the
administrative mark-paid path.
"""

import pytest
from decimal import Decimal
from unittest.mock import patch

from device_finance.audit import AuditEventType
from device_finance.currency import Money, Currency
from device_finance.exceptions import (
    EntityNotFoundError, InvalidStateError, InvariantViolationError, ValidationError
)
from device_finance.loans import InstallmentStatus, LoanStatus
from device_finance.notifications import NotificationType
from device_finance.payments import PaymentMethod, VerificationStatus

from conftest import START_DATE, CUSTOMER_DOB, days_after_start


def hnl(amount: str) -> Money:
    return Money(Decimal(amount), Currency.HNL)


def verified_payment(payment_manager, loan, amount, actor):
    payment = payment_manager.record_payment(loan.id, amount, actor, PaymentMethod.TRANSFER,
                                             payment_date=START_DATE)
    return payment_manager.verify_payment(payment.id, actor, reference_number="DEP-1",
                                          bank_source="BAC").payment


class TestPaymentWorkflow:
    """Test the payment lifecycle"""

    def test_record_payment_is_pending(self, loan, payment_manager, clerk):
        """Test that a recorded payment starts pending"""
        payment = payment_manager.record_payment(loan.id, "500.00", clerk, PaymentMethod.CASH,
                                                 payment_date=START_DATE)

        assert payment.verification_status == VerificationStatus.PENDING
        assert payment.amount == hnl("500.00")
        assert payment.recorded_by == clerk
        assert payment_manager.get_payment(payment.id).payment_date == START_DATE

    def test_record_payment_validation(self, loan, payment_manager, clerk):
        """Test payment amount and loan validation"""
        with pytest.raises(ValidationError):
            payment_manager.record_payment(loan.id, "0", clerk)
        with pytest.raises(EntityNotFoundError):
            payment_manager.record_payment("missing-loan", "10.00", clerk)

    def test_verify_stamps_verifier(self, loan, payment_manager, clerk, supervisor):
        """Test that verification stamps the verifier"""
        payment = payment_manager.record_payment(loan.id, "500.00", clerk)
        result = payment_manager.verify_payment(payment.id, supervisor, reference_number="REF-9",
                                                bank_source="Banco Atlantida")

        stored = payment_manager.get_payment(payment.id)
        assert result.allocation is None
        assert stored.verification_status == VerificationStatus.VERIFIED
        assert stored.verified_by == supervisor
        assert stored.verified_at is not None
        assert stored.reference_number == "REF-9"
        assert stored.bank_source == "Banco Atlantida"

    def test_verify_twice_fails(self, loan, payment_manager, clerk):
        """Test that a payment cannot be verified twice"""
        payment = verified_payment(payment_manager, loan, "100.00", clerk)
        with pytest.raises(InvalidStateError):
            payment_manager.verify_payment(payment.id, clerk)

    def test_verify_with_target_allocates(self, loan, installments, payment_manager, loan_manager, clerk):
        """Test verification with a target installment"""
        payment = payment_manager.record_payment(loan.id, installments[0].amount, clerk)
        result = payment_manager.verify_payment(payment.id, clerk, target_installment_id=installments[0].id,
                                                today=START_DATE)

        assert len(result.allocation.allocations) == 1
        assert result.allocation.unallocated_amount.is_zero()
        assert loan_manager.get_installment(installments[0].id).status == InstallmentStatus.PAID

    def test_confirmation_notified(self, loan, payment_manager, clerk, recorder):
        """Test the payment confirmation notification"""
        verified_payment(payment_manager, loan, "100.00", clerk)

        assert recorder.types() == [NotificationType.PAYMENT_CONFIRMED]
        assert recorder.sent[0].recipient_id == "CUST001"


class TestAllocation:
    """Test the allocation engine"""

    def test_unverified_payment_cannot_allocate(self, loan, payment_manager, clerk, storage):
        """Test that an unverified payment cannot be allocated"""
        payment = payment_manager.record_payment(loan.id, "100.00", clerk)

        with pytest.raises(InvariantViolationError):
            payment_manager.allocate(payment.id, clerk)
        assert storage.count(payment_manager.allocations_table) == 0

    def test_default_order_cascades(self, loan, installments, payment_manager, loan_manager, clerk):
        """Test the default oldest-first cascade"""
        payment = verified_payment(payment_manager, loan, "1000.00", clerk)
        result = payment_manager.allocate(payment.id, clerk, today=START_DATE)

        first, second = installments[0], installments[1]
        assert [a.installment_id for a in result.allocations] == [first.id, second.id]
        assert result.allocations[0].amount == first.amount
        assert result.allocations[1].amount == hnl("1000.00") - first.amount
        assert result.unallocated_amount.is_zero()
        assert loan_manager.get_installment(first.id).status == InstallmentStatus.PAID
        assert loan_manager.get_installment(second.id).status == InstallmentStatus.PENDING
        assert loan_manager.get_installment(second.id).paid_amount == result.allocations[1].amount

    def test_partial_payment_cascade(self, loan, installments, payment_manager, loan_manager, clerk):
        """Installment #3 owes 50; a 120 payment from #3 forward puts 50 on #3 and 70 on #4"""
        third, fourth = installments[2], installments[3]
        earlier = verified_payment(payment_manager, loan, third.amount - hnl("50.00"), clerk)
        payment_manager.allocate_amounts(earlier.id, {third.id: third.amount - hnl("50.00")}, clerk)
        assert loan_manager.get_installment(third.id).remaining_amount == hnl("50.00")

        payment = payment_manager.record_payment(loan.id, "120.00", clerk)
        result = payment_manager.verify_payment(payment.id, clerk, target_installment_id=third.id,
                                                today=START_DATE).allocation

        assert [(a.installment_id, a.amount) for a in result.allocations] == [
            (third.id, hnl("50.00")),
            (fourth.id, hnl("70.00")),
        ]
        assert result.unallocated_amount.is_zero()
        assert loan_manager.get_installment(third.id).status == InstallmentStatus.PAID
        assert loan_manager.get_installment(fourth.id).paid_amount == hnl("70.00")
        assert loan_manager.get_installment(installments[0].id).paid_amount.is_zero()

    def test_leftover_reported_as_unallocated(self, loan, installments, payment_manager, clerk):
        """Test that leftover money is reported as unallocated"""
        fourth = installments[3]
        payment = verified_payment(payment_manager, loan, "1000.00", clerk)

        result = payment_manager.allocate(payment.id, clerk, [fourth.id], today=START_DATE)

        assert result.allocated_amount == fourth.amount
        assert result.unallocated_amount == hnl("1000.00") - fourth.amount
        assert payment_manager.payment_unallocated_amount(payment_manager.get_payment(payment.id)) \
            == result.unallocated_amount

    def test_conservation(self, loan, installments, payment_manager, clerk):
        """Test that allocations never exceed the payment"""
        amounts = ["333.33", "800.00", "1500.00", "25.10"]
        for amount in amounts:
            payment = verified_payment(payment_manager, loan, amount, clerk)
            payment_manager.allocate(payment.id, clerk, today=START_DATE)

        for payment in payment_manager.get_loan_payments(loan.id):
            allocated = sum((a.amount.amount for a in payment_manager.get_payment_allocations(payment.id)),
                            Decimal('0'))
            assert allocated <= payment.amount.amount
        for installment in installments:
            allocated = sum((a.amount.amount for a in payment_manager.get_installment_allocations(installment.id)),
                            Decimal('0'))
            assert allocated <= installment.amount.amount

    def test_over_allocation_rejected_before_write(self, loan, installments, payment_manager, clerk, storage):
        """Test that over-allocation raises before any write"""
        first = installments[0]
        payment = verified_payment(payment_manager, loan, "2000.00", clerk)

        with pytest.raises(InvariantViolationError):
            payment_manager.allocate_amounts(payment.id, {first.id: first.amount + hnl("0.01")}, clerk)
        with pytest.raises(InvariantViolationError):
            payment_manager.allocate_amounts(
                payment.id, {installments[0].id: "1000.00", installments[1].id: "1000.01"}, clerk)
        assert storage.count(payment_manager.allocations_table) == 0

    def test_payment_exhaustion_rejected(self, loan, installments, payment_manager, clerk, storage):
        """Test that an exhausted payment cannot allocate again"""
        payment = verified_payment(payment_manager, loan, "100.00", clerk)

        with pytest.raises(InvariantViolationError):
            payment_manager.allocate_amounts(
                payment.id, {installments[0].id: "60.00", installments[1].id: "60.00"}, clerk)
        assert storage.count(payment_manager.allocations_table) == 0

    def test_cross_loan_allocation_rejected(self, loan, payment_manager, loan_manager, devices, clerk):
        """Test that installments of another loan are refused"""
        other_device = devices.register_device("490154203237518", "Xiaomi", "Redmi 13", clerk)
        other_loan = loan_manager.finalize_loan("CUST002", other_device.id, "2000.00", "2000.00", 40, 8,
                                                CUSTOMER_DOB, START_DATE, clerk, as_of=START_DATE)
        foreign = loan_manager.get_installments(other_loan.id)[0]
        payment = verified_payment(payment_manager, loan, "100.00", clerk)

        with pytest.raises(InvariantViolationError):
            payment_manager.allocate(payment.id, clerk, [foreign.id])

    def test_allocation_is_atomic(self, loan, installments, payment_manager, loan_manager, clerk, storage, recorder):
        """Test that a failed allocation writes nothing"""
        payment = verified_payment(payment_manager, loan, "1000.00", clerk)
        recorder.sent.clear()

        with patch.object(loan_manager, "recompute_loan_status", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                payment_manager.allocate(payment.id, clerk, today=START_DATE)

        assert storage.count(payment_manager.allocations_table) == 0
        for installment in loan_manager.get_installments(loan.id):
            assert installment.paid_amount.is_zero()
            assert installment.status == InstallmentStatus.PENDING

    def test_allocation_updates_loan_status(self, loan, installments, payment_manager, loan_manager, clerk):
        """Test that allocation recomputes the loan status"""
        total = hnl("0.00")
        for installment in installments:
            total = total + installment.amount
        payment = verified_payment(payment_manager, loan, total, clerk)

        result = payment_manager.allocate(payment.id, clerk, today=START_DATE)

        assert len(result.allocations) == 6
        assert loan_manager.get_loan(loan.id).status == LoanStatus.PAID

    def test_allocation_audited(self, loan, payment_manager, audit_trail, clerk):
        """Test the allocation audit events"""
        payment = verified_payment(payment_manager, loan, "1000.00", clerk)
        payment_manager.allocate(payment.id, clerk, today=START_DATE)

        events = audit_trail.get_events_by_type(AuditEventType.PAYMENT_ALLOCATED)
        assert len(events) == 2
        assert all(e.user_id == "clerk-001" for e in events)
        assert audit_trail.verify_integrity()['valid']


class TestReversal:
    """Test reversal on rejection"""

    def test_reject_reverses_allocations(self, loan, installments, payment_manager, loan_manager, clerk, supervisor):
        """Test that rejecting a payment removes its allocations"""
        payment = verified_payment(payment_manager, loan, "600.00", clerk)
        payment_manager.allocate(payment.id, clerk, today=START_DATE)

        rejected = payment_manager.reject_payment(payment.id, supervisor, "Deposit slip forged", today=START_DATE)

        assert rejected.verification_status == VerificationStatus.REJECTED
        assert rejected.rejection_reason == "Deposit slip forged"
        assert payment_manager.get_payment_allocations(payment.id) == []
        for installment in loan_manager.get_installments(loan.id)[:2]:
            assert installment.paid_amount.is_zero()
            assert installment.status == InstallmentStatus.PENDING
            assert installment.paid_date is None

    def test_reversal_reverts_to_overdue_past_due_date(self, loan, installments, payment_manager,
                                                       loan_manager, clerk, supervisor):
        """Test that reversed past-due installments become overdue"""
        first = installments[0]
        payment = verified_payment(payment_manager, loan, first.amount, clerk)
        payment_manager.allocate(payment.id, clerk, today=START_DATE)

        payment_manager.reject_payment(payment.id, supervisor, "Bounced", today=days_after_start(20))

        assert loan_manager.get_installment(first.id).status == InstallmentStatus.OVERDUE
        assert loan_manager.get_loan(loan.id).status == LoanStatus.OVERDUE

    def test_reversal_keeps_other_verified_payments(self, loan, installments, payment_manager,
                                                    loan_manager, clerk, supervisor):
        """Test that other verified payments still count"""
        first = installments[0]
        good = verified_payment(payment_manager, loan, "200.00", clerk)
        payment_manager.allocate(good.id, clerk, [first.id], today=START_DATE)
        bad = verified_payment(payment_manager, loan, "100.00", clerk)
        payment_manager.allocate(bad.id, clerk, [first.id], today=START_DATE)

        payment_manager.reject_payment(bad.id, supervisor, "Duplicate", today=START_DATE)

        assert loan_manager.get_installment(first.id).paid_amount == hnl("200.00")

    def test_reversal_is_idempotent(self, loan, installments, payment_manager, loan_manager, clerk, supervisor):
        """Test that a second reversal changes nothing"""
        payment = verified_payment(payment_manager, loan, "800.00", clerk)
        payment_manager.allocate(payment.id, clerk, today=START_DATE)
        payment_manager.reject_payment(payment.id, supervisor, "Bounced", today=START_DATE)

        def snapshot():
            return [(i.id, i.paid_amount, i.status) for i in loan_manager.get_installments(loan.id)]

        once = snapshot()
        result = payment_manager.reverse_on_reject(payment.id, supervisor, today=START_DATE)

        assert result.reversed_allocations == 0
        assert snapshot() == once

    def test_reverse_requires_rejected_payment(self, loan, payment_manager, clerk):
        """Test that only rejected payments can be reversed"""
        payment = verified_payment(payment_manager, loan, "100.00", clerk)
        with pytest.raises(InvalidStateError):
            payment_manager.reverse_on_reject(payment.id, clerk)

    def test_rejection_notified_after_commit(self, loan, payment_manager, clerk, supervisor, recorder):
        """Test the rejection notification after commit"""
        payment = payment_manager.record_payment(loan.id, "100.00", clerk)
        payment_manager.reject_payment(payment.id, supervisor, "Illegible receipt")

        assert recorder.types() == [NotificationType.PAYMENT_REJECTED]
        assert "Illegible receipt" in recorder.sent[0].body

    def test_cannot_reject_twice(self, loan, payment_manager, clerk):
        """Test that a payment cannot be rejected twice"""
        payment = payment_manager.record_payment(loan.id, "100.00", clerk)
        payment_manager.reject_payment(payment.id, clerk, "No receipt")
        with pytest.raises(InvalidStateError):
            payment_manager.reject_payment(payment.id, clerk, "No receipt")


class TestMarkInstallmentPaid:
    """Test the admin mark-paid path"""

    def test_defaults_to_remaining_amount(self, loan, installments, payment_manager, loan_manager,
                                          supervisor, audit_trail):
        """Test that the amount defaults to the remaining balance"""
        second = installments[1]
        result = payment_manager.mark_installment_paid(second.id, supervisor, today=START_DATE)

        assert result.payment.verification_status == VerificationStatus.VERIFIED
        assert result.payment.amount == second.amount
        assert result.allocation.unallocated_amount.is_zero()
        assert loan_manager.get_installment(second.id).status == InstallmentStatus.PAID
        assert loan_manager.get_installment(installments[0].id).status == InstallmentStatus.PENDING
        assert audit_trail.get_events_by_type(AuditEventType.INSTALLMENT_MARKED_PAID)[0].entity_id == second.id

    def test_excess_flows_forward(self, loan, installments, payment_manager, loan_manager, supervisor):
        """Test that an excess amount flows to later installments"""
        first = installments[0]
        result = payment_manager.mark_installment_paid(first.id, supervisor, amount=first.amount + hnl("10.00"),
                                                       today=START_DATE)

        assert len(result.allocation.allocations) == 2
        assert loan_manager.get_installment(installments[1].id).paid_amount == hnl("10.00")

    def test_already_paid(self, loan, installments, payment_manager, supervisor):
        """Test marking an installment that is already paid"""
        payment_manager.mark_installment_paid(installments[0].id, supervisor, today=START_DATE)
        with pytest.raises(InvalidStateError):
            payment_manager.mark_installment_paid(installments[0].id, supervisor, today=START_DATE)

    def test_failure_writes_nothing(self, loan, installments, payment_manager, loan_manager, supervisor,
                                    storage, recorder):
        """Test that a failed mark-paid writes nothing"""
        with patch.object(loan_manager, "recompute_loan_status", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                payment_manager.mark_installment_paid(installments[0].id, supervisor, today=START_DATE)

        assert storage.count(payment_manager.payments_table) == 0
        assert storage.count(payment_manager.allocations_table) == 0
        assert recorder.sent == []

"""
Tests for the auto-block policy
"""

import pytest

from device_finance.auto_block import AutoBlockPolicy
from device_finance.devices import LockStatus
from device_finance.notifications import NotificationType
from device_finance.overdue import OverdueSweep

from conftest import START_DATE, CUSTOMER_DOB, days_after_start


@pytest.fixture
def policy(storage, devices, notifier):
    return AutoBlockPolicy(storage, devices, notifier, threshold_days=30)


@pytest.fixture
def sweep(storage, loan_manager):
    return OverdueSweep(storage, loan_manager)


def second_loan(loan_manager, devices, clerk, imei="490154203237518", customer="CUST002"):
    device = devices.register_device(imei, "Xiaomi", "Redmi 13", clerk)
    loan = loan_manager.finalize_loan(customer, device.id, "2000.00", "2000.00", 40, 6,
                                      CUSTOMER_DOB, START_DATE, clerk, as_of=START_DATE)
    return loan, device


class TestAutoBlock:
    """Test the overdue auto-block policy"""

    def test_below_threshold(self, policy, sweep, loan, device, devices):
        """Test that devices below the threshold stay unlocked"""
        today = days_after_start(43)  # installment 1 is 29 days overdue
        sweep.sweep(today=today)

        result = policy.run(today=today)

        assert result.count == 0
        assert devices.current_status(device.id) == LockStatus.UNLOCKED

    def test_locks_at_threshold(self, policy, sweep, loan, device, devices, recorder):
        """Test that a device is locked once the threshold is reached"""
        today = days_after_start(44)  # installment 1 is 30 days overdue
        sweep.sweep(today=today)
        recorder.sent.clear()

        result = policy.run(today=today)

        assert result.count == 1
        assert result.failures == []
        history = devices.history(device.id)
        assert [s.status for s in history] == [LockStatus.LOCKED, LockStatus.PENDING]
        assert all(s.initiated_by.is_system for s in history)
        assert history[0].confirmed_by.is_system
        assert history[0].reason == "Overdue payment"

        assert recorder.types() == [NotificationType.DEVICE_BLOCKED_OVERDUE]
        assert recorder.sent[0].recipient_id == "CUST001"
        assert recorder.sent[0].metadata["days_overdue"] == "30"
        assert recorder.sent[0].metadata["installment_number"] == "1"

    def test_threshold_override(self, policy, sweep, loan, device, devices):
        """Test a per-run threshold override"""
        today = days_after_start(20)
        sweep.sweep(today=today)

        assert policy.run(threshold_days=5, today=today).count == 1
        assert devices.current_status(device.id) == LockStatus.LOCKED

    def test_already_locked_skipped(self, policy, sweep, loan, device, devices):
        """Test that locked devices are skipped"""
        today = days_after_start(60)
        sweep.sweep(today=today)

        policy.run(today=today)
        again = policy.run(today=today)

        assert again.count == 0
        assert again.skipped == 1
        assert len(devices.history(device.id)) == 2

    def test_pending_device_skipped(self, policy, sweep, loan, device, devices, clerk):
        """Test that devices with a pending lock are skipped"""
        today = days_after_start(60)
        sweep.sweep(today=today)
        devices.request_lock(device.id, clerk, "Manual review")

        result = policy.run(today=today)

        assert result.count == 0
        assert result.skipped == 1
        assert devices.current_status(device.id) == LockStatus.PENDING

    def test_failure_isolated_per_device(self, policy, sweep, loan, device, devices, loan_manager,
                                         clerk, monkeypatch):
        """Test that one failing device does not stop the run"""
        other_loan, other_device = second_loan(loan_manager, devices, clerk)
        today = days_after_start(60)
        sweep.sweep(today=today)

        real_confirm = devices.confirm_lock
        calls = []

        def flaky_confirm(device_id, actor, notify=True):
            calls.append(device_id)
            if len(calls) == 1:
                raise RuntimeError("lock gateway timeout")
            return real_confirm(device_id, actor, notify=notify)

        monkeypatch.setattr(devices, "confirm_lock", flaky_confirm)

        result = policy.run(today=today)

        assert result.count == 1
        assert len(result.failures) == 1
        failed_id = result.failures[0].entity_id
        locked_id = other_device.id if failed_id == device.id else device.id
        # The failed device's request was rolled back with its confirmation
        assert devices.current_status(failed_id) == LockStatus.UNLOCKED
        assert devices.history(failed_id) == []
        assert devices.current_status(locked_id) == LockStatus.LOCKED

    def test_paid_up_loan_not_blocked(self, policy, sweep, loan, installments, device, devices,
                                      payment_manager, clerk):
        """Test that a loan with nothing overdue is left alone"""
        payment_manager.mark_installment_paid(installments[0].id, clerk, today=START_DATE)
        today = days_after_start(44)
        sweep.sweep(today=today)  # installments 2 and 3 are overdue, by 16 and 2 days

        assert policy.run(today=today).count == 0
        assert devices.current_status(device.id) == LockStatus.UNLOCKED

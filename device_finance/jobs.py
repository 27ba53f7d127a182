"""
Job Entry Points

Wires configuration, logging, storage and the services together and exposes
the two batch jobs for an external scheduler:

    device-finance-jobs sweep-overdue
    device-finance-jobs auto-block [threshold_days]
"""

from dataclasses import dataclass
from typing import List, Optional
import sys
import uuid

from .amortization import AmortizationCalculator
from .audit import AuditTrail
from .auto_block import AutoBlockPolicy, AutoBlockResult
from .config import FinanceConfig, get_config
from .currency import Currency
from .devices import DeviceLockService
from .loans import LoanManager
from .logging_config import get_logger, log_action, setup_logging
from .notifications import NotificationDispatcher, WebhookChannelProvider
from .overdue import OverdueSweep, SweepResult
from .payments import PaymentManager
from .storage import StorageInterface, create_storage


logger = get_logger("jobs")


@dataclass
class FinanceServices:
    storage: StorageInterface
    audit_trail: AuditTrail
    notifier: NotificationDispatcher
    devices: DeviceLockService
    loans: LoanManager
    payments: PaymentManager
    overdue_sweep: OverdueSweep
    auto_block: AutoBlockPolicy


def build_services(storage: Optional[StorageInterface] = None,
                   cfg: Optional[FinanceConfig] = None) -> FinanceServices:
    """Build every service on one storage backend"""
    cfg = cfg or get_config()
    storage = storage or create_storage(cfg.database_url)

    audit_trail = AuditTrail(storage, enabled=cfg.enable_audit_logging)
    notifier = NotificationDispatcher(storage, enabled=cfg.enable_notifications)
    if cfg.notification_webhook_url:
        notifier.register_provider(
            WebhookChannelProvider(cfg.notification_webhook_url, timeout=cfg.notification_timeout))

    devices = DeviceLockService(storage, audit_trail, notifier,
                                unlock_reason=cfg.unlock_reason_default)
    loans = LoanManager(storage, audit_trail, devices,
                        AmortizationCalculator(Currency.from_code(cfg.currency)))
    return FinanceServices(
        storage=storage,
        audit_trail=audit_trail,
        notifier=notifier,
        devices=devices,
        loans=loans,
        payments=PaymentManager(storage, audit_trail, loans, notifier),
        overdue_sweep=OverdueSweep(storage, loans),
        auto_block=AutoBlockPolicy(storage, devices, notifier,
                                   threshold_days=cfg.auto_block_threshold_days,
                                   lock_reason=cfg.lock_reason_overdue),
    )


def run_overdue_sweep(services: Optional[FinanceServices] = None) -> SweepResult:
    services = services or build_services()
    return services.overdue_sweep.sweep()


def run_auto_block(services: Optional[FinanceServices] = None,
                   threshold_days: Optional[int] = None) -> AutoBlockResult:
    services = services or build_services()
    return services.auto_block.run(threshold_days=threshold_days)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    cfg = get_config()
    setup_logging(cfg.log_level, fmt=cfg.log_format)

    if not argv or argv[0] not in ("sweep-overdue", "auto-block"):
        print("usage: device-finance-jobs {sweep-overdue | auto-block [threshold_days]}", file=sys.stderr)
        return 2

    job = argv[0]
    run_id = str(uuid.uuid4())
    log_action(logger, "info", f"Starting {job}", user_id="system", action=job, correlation_id=run_id)

    services = build_services(cfg=cfg)
    try:
        if job == "sweep-overdue":
            result = run_overdue_sweep(services)
        else:
            threshold = int(argv[1]) if len(argv) > 1 else None
            result = run_auto_block(services, threshold)
    finally:
        services.storage.close()

    log_action(logger, "error" if result.failures else "info",
               f"Finished {job}: {result.count} changed, {len(result.failures)} failed",
               user_id="system", action=job, correlation_id=run_id,
               extra={"processed": result.processed, "failed": len(result.failures)})
    return 1 if result.failures else 0


if __name__ == "__main__":
    sys.exit(main())

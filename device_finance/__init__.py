"""
Device Financing Core

Ledger and device-lock core for bi-weekly phone financing: amortization,
installment ledger, payment allocation, overdue sweep, device lock state
machine and auto-block policy.
"""

__version__ = "1.0.0"

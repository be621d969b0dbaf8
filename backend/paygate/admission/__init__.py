"""
Admission - one domain action per confirmed payment or consumed promo use.
"""

from .gate import AdmissionGate, AdmissionResult, AdmissionState, RejectReason
from .polling import PaymentPoller, PollResult, PollStatus
from .promo import PromoAllowanceStore, PromoCheck

__all__ = [
    "AdmissionGate",
    "AdmissionResult",
    "AdmissionState",
    "PaymentPoller",
    "PollResult",
    "PollStatus",
    "PromoAllowanceStore",
    "PromoCheck",
    "RejectReason",
]

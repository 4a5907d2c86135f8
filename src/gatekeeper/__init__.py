"""Gatekeeper - admission control with daily quotas and adaptive rate limiting."""

__version__ = "0.1.0"

from gatekeeper.admission import AdmissionController, AdmissionDecision, AdmissionResult
from gatekeeper.clock import Clock, ManualClock, SystemClock
from gatekeeper.errors import ClockSkew, GatekeeperError, InvalidIdentity, StoreUnavailable

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionResult",
    "Clock",
    "ClockSkew",
    "GatekeeperError",
    "InvalidIdentity",
    "ManualClock",
    "StoreUnavailable",
    "SystemClock",
]

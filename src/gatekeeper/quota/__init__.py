"""
Admission components: daily quota, window counting and adaptive gate.

All three share one AdmissionStore and one Clock so that decisions are
consistent across process instances and deterministic under test.
"""

from gatekeeper.quota.gate import (
    AdaptiveGate,
    Decision,
    GatePolicy,
    GateVerdict,
    Severity,
    load_endpoint_policies,
)
from gatekeeper.quota.ledger import QuotaLedger, QuotaVerdict, RecordResult
from gatekeeper.quota.window import WindowCount, WindowCounter

__all__ = [
    "AdaptiveGate",
    "Decision",
    "GatePolicy",
    "GateVerdict",
    "QuotaLedger",
    "QuotaVerdict",
    "RecordResult",
    "Severity",
    "WindowCount",
    "WindowCounter",
    "load_endpoint_policies",
]

"""Admission checks run before a batch is scheduled."""

from probe_engine.admission.allowlist import Allowlist
from probe_engine.admission.quota import QuotaDecision, QuotaLimiter, identity_key
from probe_engine.admission.ssrf import SsrfGuard

__all__ = ["Allowlist", "QuotaDecision", "QuotaLimiter", "SsrfGuard", "identity_key"]

"""Tenant content policies: evaluation, PII handling and storage."""

from .evaluator import evaluate_policies, redact_pii
from .store import load_tenant_policies

__all__ = ["evaluate_policies", "load_tenant_policies", "redact_pii"]

"""Policy evaluator: checks text against a tenant's content policies.

Evaluation is pure. Every policy of the requested phase is checked
independently and all violations are collected. A policy that cannot be
evaluated is skipped with a warning so one bad rule never blocks the batch.
"""

import logging
import re

from ..schemas.policies import (
    LengthConfig,
    PiiAction,
    PiiFilterConfig,
    Policy,
    PolicyMode,
    PolicyResult,
    PolicyViolation,
    ToneConfig,
    TopicFilterConfig,
)
from . import pii

logger = logging.getLogger(__name__)

UNCERTAINTY_PHRASES = [
    "i'm not sure",
    "i am not sure",
    "not sure",
    "unsure",
    "i don't know",
    "i do not know",
    "i am not certain",
    "i'm not certain",
    "i cannot determine",
    "i can't determine",
    "it might be",
    "might be",
    "maybe",
    "perhaps",
    "possibly",
    "i think maybe",
]

_UNCERTAINTY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in UNCERTAINTY_PHRASES) + r")\b",
    re.IGNORECASE,
)


def _subject(phase: PolicyMode) -> str:
    return "Message" if phase == PolicyMode.PRE else "Response"


def _violation(policy: Policy, message: str) -> PolicyViolation:
    return PolicyViolation(
        policy_id=policy.id,
        policy_name=policy.name,
        policy_type=policy.type,
        message=message,
    )


def _check_topics(text: str, policy: Policy, config: TopicFilterConfig, phase: PolicyMode) -> list[PolicyViolation]:
    lowered = text.lower()
    violations: list[PolicyViolation] = []

    for topic in config.blocked_topics:
        if topic and topic.lower() in lowered:
            violations.append(_violation(policy, f'{_subject(phase)} contains blocked topic: "{topic}"'))

    for pattern in config.blocked_patterns:
        try:
            matched = re.search(pattern, text, re.IGNORECASE)
        except re.error:
            logger.warning("Skipping invalid pattern %r in policy %s", pattern, policy.id)
            continue
        if matched:
            violations.append(_violation(policy, f'{_subject(phase)} matches blocked pattern: "{pattern}"'))

    return violations


def _check_pii(text: str, policy: Policy, config: PiiFilterConfig, phase: PolicyMode) -> list[PolicyViolation]:
    # Redact-mode policies are applied by redact_pii, not enforced here
    if config.action != PiiAction.BLOCK:
        return []
    return [
        _violation(policy, f"{_subject(phase)} contains {kind} (PII not allowed)")
        for kind in dict.fromkeys(config.detect)
        if pii.contains(text, kind)
    ]


def _check_tone(text: str, policy: Policy, config: ToneConfig, phase: PolicyMode) -> list[PolicyViolation]:
    lowered = text.lower()
    violations: list[PolicyViolation] = []

    found = [p for p in config.blocked_phrases if p and p.lower() in lowered]
    if found:
        phrases = ", ".join(f'"{p}"' for p in found)
        violations.append(_violation(policy, f"{_subject(phase)} contains blocked phrase: {phrases}"))

    if config.block_uncertain and _UNCERTAINTY_RE.search(text):
        violations.append(_violation(policy, f"{_subject(phase)} sounds uncertain, which violates tone policy"))

    return violations


def _check_length(text: str, policy: Policy, config: LengthConfig, phase: PolicyMode) -> list[PolicyViolation]:
    length = len(text)
    if config.min_length is not None and length < config.min_length:
        return [_violation(policy, f"{_subject(phase)} too short ({length} chars, minimum {config.min_length})")]
    if config.max_length is not None and length > config.max_length:
        return [_violation(policy, f"{_subject(phase)} too long ({length} chars, maximum {config.max_length})")]
    return []


_CHECKS = {
    TopicFilterConfig: _check_topics,
    PiiFilterConfig: _check_pii,
    ToneConfig: _check_tone,
    LengthConfig: _check_length,
}


def evaluate_policies(text: str, policies: list[Policy], phase: PolicyMode) -> PolicyResult:
    """Evaluate every enabled policy of ``phase`` against ``text``.

    Args:
        text: User message (pre phase) or generated reply (post phase)
        policies: Tenant policies, any phase
        phase: Which phase to evaluate

    Returns:
        PolicyResult with every violation found; passed when there are none
    """
    violations: list[PolicyViolation] = []

    for policy in policies:
        if not policy.enabled or policy.mode != phase:
            continue
        check = _CHECKS.get(type(policy.config))
        if check is None:
            logger.warning("Skipping policy %s with unsupported config %s", policy.id, type(policy.config).__name__)
            continue
        try:
            violations.extend(check(text, policy, policy.config, phase))
        except Exception:
            logger.exception("Policy %s (%s) failed to evaluate, skipping", policy.id, policy.type)

    return PolicyResult(passed=not violations, violations=violations)


def redact_pii(text: str, policies: list[Policy]) -> str:
    """Mask PII configured by enabled redact-mode PII policies.

    Returns ``text`` unchanged when no such policy exists. Idempotent.
    """
    kinds = []
    for policy in policies:
        config = policy.config
        if policy.enabled and isinstance(config, PiiFilterConfig) and config.action == PiiAction.REDACT:
            kinds.extend(config.detect)

    if not kinds:
        return text

    try:
        return pii.redact(text, kinds)
    except Exception:
        logger.exception("PII redaction failed, continuing with original text")
        return text

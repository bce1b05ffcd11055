"""PII detection and redaction using Microsoft Presidio pattern recognizers.

Only fixed-shape identifiers are detected, so no NLP engine is loaded: each
kind is a ``PatternRecognizer`` run directly against the text, and redaction
goes through the Presidio ``AnonymizerEngine`` with a single replacement token.
"""

import logging
import re
from typing import Optional

from presidio_analyzer import Pattern, PatternRecognizer, RecognizerResult
from presidio_anonymizer import AnonymizerEngine
from presidio_anonymizer.entities import OperatorConfig

from ..schemas.policies import PiiKind

logger = logging.getLogger(__name__)

REDACTION_TOKEN = "[REDACTED]"


class _DigitCountRecognizer(PatternRecognizer):
    """Pattern recognizer that only accepts matches with a bounded digit count."""

    def __init__(self, min_digits: int, max_digits: int, **kwargs):
        self.min_digits = min_digits
        self.max_digits = max_digits
        super().__init__(**kwargs)

    def validate_result(self, pattern_text: str) -> Optional[bool]:
        digits = len(re.sub(r"\D", "", pattern_text))
        return self.min_digits <= digits <= self.max_digits


def _create_recognizers() -> dict[PiiKind, PatternRecognizer]:
    """Create one pattern recognizer per supported PII kind."""
    return {
        PiiKind.EMAIL: PatternRecognizer(
            supported_entity="EMAIL_ADDRESS",
            name="EmailRecognizer",
            patterns=[
                Pattern(
                    name="email",
                    regex=r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}",
                    score=0.85,
                ),
            ],
        ),
        PiiKind.PHONE: _DigitCountRecognizer(
            min_digits=7,
            max_digits=15,
            supported_entity="PHONE_NUMBER",
            name="PhoneRecognizer",
            patterns=[
                Pattern(
                    name="phone",
                    regex=r"(?:\+?\d{1,3}[-.\s]?)?\(?\d{2,4}\)?[-.\s]?\d{3,4}[-.\s]?\d{3,4}",
                    score=0.6,
                ),
            ],
        ),
        PiiKind.SSN: PatternRecognizer(
            supported_entity="US_SSN",
            name="SsnRecognizer",
            patterns=[
                Pattern(name="ssn_with_dashes", regex=r"\b\d{3}-\d{2}-\d{4}\b", score=0.85),
            ],
        ),
        PiiKind.CREDIT_CARD: _DigitCountRecognizer(
            min_digits=13,
            max_digits=19,
            supported_entity="CREDIT_CARD",
            name="CreditCardRecognizer",
            patterns=[
                Pattern(name="card_number", regex=r"\b\d(?:[-\s]?\d){12,18}\b", score=0.7),
            ],
        ),
        PiiKind.IP_ADDRESS: PatternRecognizer(
            supported_entity="IP_ADDRESS",
            name="IpAddressRecognizer",
            patterns=[
                Pattern(name="ipv4", regex=r"\b(?:\d{1,3}\.){3}\d{1,3}\b", score=0.6),
            ],
        ),
    }


# Lazy initialization to avoid building recognizers at import time
_recognizers: dict[PiiKind, PatternRecognizer] | None = None
_anonymizer: AnonymizerEngine | None = None


def _get_recognizers() -> dict[PiiKind, PatternRecognizer]:
    global _recognizers
    if _recognizers is None:
        _recognizers = _create_recognizers()
    return _recognizers


def _get_anonymizer() -> AnonymizerEngine:
    """Get or create the Presidio anonymizer engine (lazy initialization)."""
    global _anonymizer
    if _anonymizer is None:
        _anonymizer = AnonymizerEngine()
    return _anonymizer


def detect(text: str, kind: PiiKind) -> list[RecognizerResult]:
    """Return the spans of ``text`` that look like ``kind``."""
    if not text:
        return []
    recognizer = _get_recognizers()[PiiKind(kind)]
    return recognizer.analyze(text, recognizer.supported_entities, nlp_artifacts=None) or []


def contains(text: str, kind: PiiKind) -> bool:
    return bool(detect(text, kind))


def redact(text: str, kinds: list[PiiKind]) -> str:
    """Replace every detected span of the given kinds with the redaction token.

    Args:
        text: Text to redact
        kinds: PII kinds to look for

    Returns:
        Redacted text, or the original text when nothing was detected
    """
    if not text or not kinds:
        return text

    results: list[RecognizerResult] = []
    for kind in dict.fromkeys(kinds):
        results.extend(detect(text, kind))

    if not results:
        return text

    anonymized = _get_anonymizer().anonymize(
        text=text,
        analyzer_results=results,
        operators={"DEFAULT": OperatorConfig("replace", {"new_value": REDACTION_TOKEN})},
    )
    return anonymized.text

"""Keyword heuristic for protected health information in free text.

For each category the score is the share of its keywords found in the
text, as a percentage. The best-scoring category wins and the text is
flagged when that score exceeds PHI_THRESHOLD.

This is a first-pass filter feeding human review, not a compliance
guarantee: a negative result means "not flagged", never "contains no PHI".
The 20% threshold has no documented rationale; changing it needs product
sign-off.

Usage:
    from src.security.phi import detect_phi

    result = detect_phi("Started speech therapy after the ADHD diagnosis")
    result.contains_phi, result.phi_type, result.confidence
"""

from __future__ import annotations

from dataclasses import dataclass

PHI_THRESHOLD = 20.0

PHI_PATTERNS: dict[str, tuple[str, ...]] = {
    "mental_health": (
        "therapy",
        "counseling",
        "mental health",
        "psychiatric",
        "psychological",
        "depression",
        "anxiety",
        "adhd",
        "autism",
        "behavioral disorder",
    ),
    "medical": (
        "medication",
        "medicine",
        "doctor",
        "physician",
        "medical",
        "diagnosis",
        "treatment",
        "hospital",
        "clinic",
        "prescription",
    ),
    "developmental_disability": (
        "disability",
        "special needs",
        "developmental delay",
        "cognitive impairment",
        "intellectual disability",
        "learning disability",
    ),
    "therapy_notes": (
        "speech therapy",
        "occupational therapy",
        "physical therapy",
        "behavioral therapy",
        "intervention",
        "therapeutic",
        "treatment plan",
    ),
}


def _check_disjoint() -> None:
    seen: dict[str, str] = {}
    for category, keywords in PHI_PATTERNS.items():
        for keyword in keywords:
            if keyword in seen:
                msg = f"PHI keyword {keyword!r} appears in both {seen[keyword]} and {category}"
                raise ValueError(msg)
            seen[keyword] = category


_check_disjoint()


@dataclass(frozen=True)
class PHIDetection:
    """Outcome of scanning one piece of text."""

    contains_phi: bool
    phi_type: str | None
    confidence: float  # 0-100


NO_PHI = PHIDetection(contains_phi=False, phi_type=None, confidence=0.0)


def detect_phi(text: str | None) -> PHIDetection:
    """Estimate whether `text` contains PHI and which category it looks like."""
    if not text:
        return NO_PHI

    lower = text.lower()
    best_type: str | None = None
    best_score = 0.0

    for category, keywords in PHI_PATTERNS.items():
        matches = sum(1 for keyword in keywords if keyword in lower)
        score = matches / len(keywords) * 100
        if score > best_score:
            best_score = score
            best_type = category

    flagged = best_score > PHI_THRESHOLD
    return PHIDetection(
        contains_phi=flagged,
        phi_type=best_type if flagged else None,
        confidence=round(best_score, 2),
    )

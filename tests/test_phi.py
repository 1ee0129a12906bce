"""Tests for the PHI keyword detector."""

from __future__ import annotations

import pytest

from src.security.phi import NO_PHI, PHI_PATTERNS, PHI_THRESHOLD, detect_phi


class TestDetectPhi:
    def test_mental_health_text_flagged(self) -> None:
        result = detect_phi("Ongoing counseling for anxiety and depression, ADHD suspected")
        assert result.contains_phi is True
        assert result.phi_type == "mental_health"
        assert result.confidence == 40.0

    def test_medical_text_flagged(self) -> None:
        result = detect_phi("Doctor changed the prescription; medication at lunch")
        assert result.contains_phi is True
        assert result.phi_type == "medical"
        assert result.confidence > PHI_THRESHOLD

    def test_developmental_text_flagged(self) -> None:
        result = detect_phi("Special needs plan for a learning disability")
        assert result.contains_phi is True
        assert result.phi_type == "developmental_disability"

    def test_single_keyword_below_threshold(self) -> None:
        """One of ten keywords is 10%, not enough to flag."""
        result = detect_phi("Parent mentioned the doctor is on holiday")
        assert result.contains_phi is False
        assert result.phi_type is None
        assert result.confidence == 10.0

    def test_exactly_threshold_not_flagged(self) -> None:
        # 2 of 10 medical keywords = 20%, the threshold is exclusive
        result = detect_phi("hospital clinic")
        assert result.confidence == 20.0
        assert result.contains_phi is False

    def test_case_insensitive(self) -> None:
        assert detect_phi("AUTISM and ANXIETY and ADHD").contains_phi is True

    @pytest.mark.parametrize("text", ["", None])
    def test_empty_input(self, text: str | None) -> None:
        assert detect_phi(text) == NO_PHI

    def test_neutral_text(self) -> None:
        result = detect_phi("Painted a rainbow and shared crayons at circle time")
        assert result == NO_PHI

    def test_confidence_in_range(self) -> None:
        everything = " ".join(kw for kws in PHI_PATTERNS.values() for kw in kws)
        result = detect_phi(everything)
        assert 0.0 <= result.confidence <= 100.0
        assert result.contains_phi is True


class TestPatterns:
    def test_categories(self) -> None:
        assert set(PHI_PATTERNS) == {"mental_health", "medical", "developmental_disability", "therapy_notes"}

    def test_keywords_unique_across_categories(self) -> None:
        keywords = [kw for kws in PHI_PATTERNS.values() for kw in kws]
        assert len(keywords) == len(set(keywords))

    def test_keywords_are_lowercase(self) -> None:
        for kws in PHI_PATTERNS.values():
            assert all(kw == kw.lower() for kw in kws)

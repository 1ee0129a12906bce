"""Security module — risk classification, PHI detection, field encryption."""

from src.security.phi import detect_phi
from src.security.taxonomy import classify

__all__ = ["classify", "detect_phi"]

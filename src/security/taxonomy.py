"""Risk & compliance taxonomy — pure classification of (resource type, action).

Rules are evaluated in order and the first match wins:

    1. phi_data                               -> critical
    2. behavior_logs / children + delete      -> critical
    3. educational_record                     -> high
    4. delete on anything else                -> high
    5. update                                 -> medium
    6. otherwise                              -> low

Compliance flags are additive: FERPA for educational resources, HIPAA for
health resources; one resource type may carry both.

Malformed input never raises. A bad resource type classifies as low with
no flags; an unknown action still gets the resource-driven risk and flags
(phi_data stays critical). Both set `review_required=True` so the entry
still gets written and a human can look at it later.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace

from src.models.enums import ComplianceFlag, DataAction, RiskLevel

FERPA_RESOURCES: frozenset[str] = frozenset({
    "behavior_logs",
    "children",
    "educational_record",
    "child_profile",
})

PHI_RESOURCES: frozenset[str] = frozenset({
    "phi_data",
    "medical_notes",
    "therapy_notes",
    "health_information",
})

_KNOWN_ACTIONS: frozenset[str] = frozenset(a.value for a in DataAction)


@dataclass(frozen=True)
class RiskRule:
    """A single precedence rule mapping (resource type, action) to a risk level."""

    name: str
    condition: Callable[[str, str], bool]
    level: RiskLevel


RISK_RULES: list[RiskRule] = [
    RiskRule(
        name="phi_data",
        condition=lambda resource, _: resource == "phi_data",
        level=RiskLevel.CRITICAL,
    ),
    RiskRule(
        name="child_record_delete",
        condition=lambda resource, action: resource in {"behavior_logs", "children"} and action == "delete",
        level=RiskLevel.CRITICAL,
    ),
    RiskRule(
        name="educational_record",
        condition=lambda resource, _: resource == "educational_record",
        level=RiskLevel.HIGH,
    ),
    RiskRule(
        name="delete",
        condition=lambda _, action: action == "delete",
        level=RiskLevel.HIGH,
    ),
    RiskRule(
        name="update",
        condition=lambda _, action: action == "update",
        level=RiskLevel.MEDIUM,
    ),
]


@dataclass(frozen=True)
class Classification:
    """Result of classifying one (resource type, action) pair."""

    risk_level: RiskLevel
    compliance_flags: tuple[str, ...] = field(default_factory=tuple)
    review_required: bool = False
    reason: str | None = None

    @property
    def is_ferpa(self) -> bool:
        return ComplianceFlag.FERPA_EDUCATIONAL_RECORD.value in self.compliance_flags

    @property
    def is_phi(self) -> bool:
        return ComplianceFlag.HIPAA_PHI_DATA.value in self.compliance_flags


def is_ferpa_resource(resource_type: str) -> bool:
    return resource_type in FERPA_RESOURCES


def is_phi_resource(resource_type: str) -> bool:
    return resource_type in PHI_RESOURCES


def compliance_flags(resource_type: str) -> tuple[str, ...]:
    """Regulatory flags implied by the resource type alone."""
    flags: list[str] = []
    if is_ferpa_resource(resource_type):
        flags.append(ComplianceFlag.FERPA_EDUCATIONAL_RECORD.value)
    if is_phi_resource(resource_type):
        flags.append(ComplianceFlag.HIPAA_PHI_DATA.value)
    return tuple(flags)


def risk_level(resource_type: str, action: str) -> RiskLevel:
    for rule in RISK_RULES:
        if rule.condition(resource_type, action):
            return rule.level
    return RiskLevel.LOW


def classify(resource_type: object, action: object) -> Classification:
    """Classify a resource/action pair. Deterministic and side-effect free."""
    if not isinstance(resource_type, str) or not resource_type.strip():
        return Classification(RiskLevel.LOW, review_required=True, reason="malformed resource type")

    verb = action.lower() if isinstance(action, str) else ""
    # Resource rules apply to any verb; only the action rules need a known one
    result = Classification(
        risk_level=risk_level(resource_type, verb),
        compliance_flags=compliance_flags(resource_type),
    )
    if verb not in _KNOWN_ACTIONS:
        return replace(result, review_required=True, reason=f"unknown action: {action!r}")
    return result

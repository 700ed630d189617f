"""
Fill planning.

Turns detection results and a profile into an ordered list of fill actions
with per-field delays taken from the site rule. Sensitive and
rule-restricted kinds are never filled unless explicitly allowed.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
import logging

from fieldfill.intelligence.site_rules import SiteRule
from fieldfill.models import SENSITIVE_TYPES, Confidence, DetectedField
from fieldfill.profile import SECTIONS, Profile
from fieldfill.scheduling import TaskQueue, TimerHandle

logger = logging.getLogger(__name__)

# Buckets that are filled without asking
FILLABLE_CONFIDENCE = frozenset({Confidence.HIGH, Confidence.MEDIUM, Confidence.LEARNED})


@dataclass
class FillAction:
    """Write one value into one element."""
    fingerprint: str
    field_type: str
    value: str
    delay_ms: int
    at_ms: int
    element: Any = None

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "type": self.field_type,
            "value": self.value,
            "delay_ms": self.delay_ms,
            "at_ms": self.at_ms,
        }


@dataclass
class SkippedField:
    fingerprint: str
    field_type: str
    reason: str

    def to_dict(self) -> dict:
        return {"fingerprint": self.fingerprint, "type": self.field_type, "reason": self.reason}


@dataclass
class FillPlan:
    actions: List[FillAction] = field(default_factory=list)
    skipped: List[SkippedField] = field(default_factory=list)
    custom_handlers: dict = field(default_factory=dict)

    @property
    def total_ms(self) -> int:
        return self.actions[-1].at_ms if self.actions else 0

    def to_dict(self) -> dict:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "skipped": [s.to_dict() for s in self.skipped],
            "custom_handlers": dict(self.custom_handlers),
            "total_ms": self.total_ms,
        }


def plan_fill(
    fields: List[DetectedField],
    profile: Profile,
    rule: Optional[SiteRule] = None,
    section: Optional[str] = None,
    allow_sensitive: bool = False,
) -> FillPlan:
    """
    Build the fill plan for a set of detected fields.

    Args:
        fields: Detection results, in document order
        profile: Values to fill
        rule: Site rule supplying delays, restricted kinds and handlers
        section: Limit values to one profile section ("personal", "work", "custom")
        allow_sensitive: Fill card numbers, CVVs and passwords too

    Returns:
        FillPlan with actions in fill order and the skipped fields

    Raises:
        ValueError: if section is not a profile section
    """
    if section is not None and section not in SECTIONS:
        raise ValueError(f"Unknown profile section '{section}', expected one of {SECTIONS}")

    plan = FillPlan(custom_handlers=dict(rule.custom_handlers) if rule is not None else {})
    restricted = rule.restricted_types if rule is not None else frozenset()
    elapsed = 0

    for detected in fields:
        kind = detected.field_type.value

        if not detected.is_target:
            plan.skipped.append(SkippedField(detected.fingerprint, kind, "not_target"))
            continue
        if detected.confidence not in FILLABLE_CONFIDENCE:
            plan.skipped.append(SkippedField(detected.fingerprint, kind, "low_confidence"))
            continue
        if detected.field_type in restricted:
            plan.skipped.append(SkippedField(detected.fingerprint, kind, "restricted"))
            continue
        if detected.field_type in SENSITIVE_TYPES and not allow_sensitive:
            plan.skipped.append(SkippedField(detected.fingerprint, kind, "sensitive"))
            continue

        value = profile.value_for(detected.field_type, section)
        if not value:
            plan.skipped.append(SkippedField(detected.fingerprint, kind, "no_value"))
            continue

        delay = rule.delay_for(detected.field_type) if rule is not None else 0
        elapsed += delay
        plan.actions.append(FillAction(
            fingerprint=detected.fingerprint,
            field_type=kind,
            value=value,
            delay_ms=delay,
            at_ms=elapsed,
            element=detected.element,
        ))

    logger.debug(f"Fill plan: {len(plan.actions)} actions, {len(plan.skipped)} skipped")
    return plan


def schedule_fill(
    plan: FillPlan,
    task_queue: TaskQueue,
    apply: Callable[[FillAction], None],
) -> List[TimerHandle]:
    """Queue every action of a plan at its offset. Returns the timer handles."""
    return [
        task_queue.call_later(action.at_ms, lambda a=action: apply(a), label=f"fill:{action.field_type}")
        for action in plan.actions
    ]

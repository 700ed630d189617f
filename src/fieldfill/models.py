"""
Core data model.

This module defines the data structures shared by the detector, the caches
and the learning store:
- FieldType: the closed set of semantic field kinds
- Confidence / DetectionMethod: coarse bucket and winning signal source
- DetectionContext: immutable snapshot of the text around an element
- DetectedField: one classification result
- LearningData: one recorded user correction
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
import time
import weakref


class FieldType(Enum):
    """Semantic kinds of form fields. Every signal table is keyed by this."""
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    FULL_NAME = "full_name"
    EMAIL = "email"
    PHONE = "phone"
    STREET = "street"
    CITY = "city"
    STATE = "state"
    ZIP = "zip"
    COUNTRY = "country"
    CARD_NUMBER = "card_number"
    CVV = "cvv"
    EXPIRY_DATE = "expiry_date"
    COMPANY = "company"
    JOB_TITLE = "job_title"
    WEBSITE = "website"
    LINKEDIN = "linkedin"
    PASSWORD = "password"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "str | FieldType") -> "FieldType":
        """Accept an enum member, its value, or a legacy camelCase name."""
        if isinstance(value, FieldType):
            return value
        text = str(value).strip()
        try:
            return cls(text)
        except ValueError:
            pass
        snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in text).lstrip("_")
        return cls(snake)

    @classmethod
    def known(cls) -> list["FieldType"]:
        """All concrete kinds (everything except UNKNOWN)."""
        return [t for t in cls if t is not cls.UNKNOWN]


# Kinds that must never be filled without an explicit opt-in
SENSITIVE_TYPES = frozenset({FieldType.CARD_NUMBER, FieldType.CVV, FieldType.PASSWORD})


class Confidence(Enum):
    """Coarse confidence bucket of a detection."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"
    LEARNED = "learned"


class DetectionMethod(Enum):
    """Which signal source produced a detection."""
    SITE_RULE = "site_rule"
    AUTOCOMPLETE = "autocomplete"
    INPUT_TYPE = "input_type"
    PATTERN = "pattern"
    LEARNED = "learned"
    NONE = "none"


# Fixed score -> bucket table, checked top to bottom
CONFIDENCE_THRESHOLDS: tuple[tuple[float, Confidence], ...] = (
    (0.8, Confidence.HIGH),
    (0.5, Confidence.MEDIUM),
    (0.2, Confidence.LOW),
)


def confidence_for_score(score: float) -> Confidence:
    """Map a numeric score in [0, 1] to its confidence bucket."""
    for threshold, bucket in CONFIDENCE_THRESHOLDS:
        if score >= threshold:
            return bucket
    return Confidence.NONE


@dataclass(frozen=True)
class DetectionContext:
    """
    Text and attributes around an element at detection time.

    Immutable once captured; used for scoring and for learning signatures.
    """
    surrounding_text: str = ""
    label_text: str = ""
    placeholder_text: str = ""
    attributes: tuple[tuple[str, str], ...] = ()

    @property
    def attribute_map(self) -> dict[str, str]:
        return dict(self.attributes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "surrounding_text": self.surrounding_text,
            "label_text": self.label_text,
            "placeholder_text": self.placeholder_text,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetectionContext":
        return cls(
            surrounding_text=data.get("surrounding_text", ""),
            label_text=data.get("label_text", ""),
            placeholder_text=data.get("placeholder_text", ""),
            attributes=tuple(sorted((data.get("attributes") or {}).items())),
        )


@dataclass(frozen=True)
class DetectedField:
    """
    Result of classifying one element.

    The element itself is only weakly referenced; cache entries are keyed by
    fingerprint and survive the node being removed and re-created.
    """
    field_type: FieldType
    score: float
    method: DetectionMethod
    fingerprint: str
    signature: str
    context: DetectionContext | None = None
    element_ref: weakref.ref | None = field(default=None, compare=False, repr=False)

    @property
    def confidence(self) -> Confidence:
        if self.method is DetectionMethod.LEARNED:
            return Confidence.LEARNED
        return confidence_for_score(self.score)

    @property
    def element(self) -> Any:
        """The live element, or None if it is gone or was never attached."""
        return self.element_ref() if self.element_ref is not None else None

    @property
    def is_target(self) -> bool:
        """True when this element should be filled."""
        return self.field_type is not FieldType.UNKNOWN and self.confidence is not Confidence.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.field_type.value,
            "score": round(self.score, 3),
            "confidence": self.confidence.value,
            "method": self.method.value,
            "fingerprint": self.fingerprint,
            "signature": self.signature,
            "context": self.context.to_dict() if self.context else None,
        }


@dataclass
class LearningData:
    """One user correction. The log of these is append-only."""
    signature: str
    detected_type: FieldType
    corrected_type: FieldType
    signals: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "detected_type": self.detected_type.value,
            "corrected_type": self.corrected_type.value,
            "signals": self.signals,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LearningData":
        return cls(
            signature=data["signature"],
            detected_type=FieldType.parse(data["detected_type"]),
            corrected_type=FieldType.parse(data["corrected_type"]),
            signals=data.get("signals") or {},
            timestamp=data.get("timestamp", 0),
        )

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000)

"""
Signal tables for field classification.

Three kinds of signals are defined here:
- AUTOCOMPLETE_MAP: exact autocomplete token -> FieldType
- INPUT_TYPE_SIGNALS: <input type> hints (email, tel, password, url)
- PatternTable: weighted regular expressions per FieldType, evaluated
  against normalized name, id, label, placeholder, aria-label and title

Pattern weights (documented choice, verified by the confidence bucket tests):
- a hit contributes pattern_weight x SOURCE_WEIGHTS[source]; for each
  pattern only its best source counts
- every additional source with any hit adds CORROBORATION_BONUS
- the input-type hint adds its own weight
- a section keyword group adds CoreConfig.context_boost to types that
  already scored
- the total is capped at 1.0
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from fieldfill.errors import SignalEvaluationError
from fieldfill.models import FieldType
from fieldfill.snapshot import ElementSnapshot, normalize_text

logger = logging.getLogger(__name__)


# Standard autocomplete tokens. Only exact literal values match.
AUTOCOMPLETE_MAP: dict[str, FieldType] = {
    "given-name": FieldType.FIRST_NAME,
    "family-name": FieldType.LAST_NAME,
    "name": FieldType.FULL_NAME,
    "cc-name": FieldType.FULL_NAME,
    "email": FieldType.EMAIL,
    "tel": FieldType.PHONE,
    "tel-national": FieldType.PHONE,
    "street-address": FieldType.STREET,
    "address-line1": FieldType.STREET,
    "address-level2": FieldType.CITY,
    "address-level1": FieldType.STATE,
    "postal-code": FieldType.ZIP,
    "country": FieldType.COUNTRY,
    "country-name": FieldType.COUNTRY,
    "cc-number": FieldType.CARD_NUMBER,
    "cc-csc": FieldType.CVV,
    "cc-exp": FieldType.EXPIRY_DATE,
    "organization": FieldType.COMPANY,
    "organization-title": FieldType.JOB_TITLE,
    "url": FieldType.WEBSITE,
    "current-password": FieldType.PASSWORD,
    "new-password": FieldType.PASSWORD,
}

INPUT_TYPE_SIGNALS: dict[str, tuple[FieldType, float]] = {
    "email": (FieldType.EMAIL, 0.6),
    "tel": (FieldType.PHONE, 0.6),
    "password": (FieldType.PASSWORD, 0.8),
    "url": (FieldType.WEBSITE, 0.5),
}

# How much a hit in each attribute counts
SOURCE_WEIGHTS: dict[str, float] = {
    "name": 1.0,
    "id": 0.9,
    "label": 0.9,
    "aria_label": 0.8,
    "placeholder": 0.7,
    "title": 0.6,
}

CORROBORATION_BONUS = 0.1

# Builtin patterns: (regex over normalized text, weight)
DEFAULT_PATTERNS: dict[FieldType, list[tuple[str, float]]] = {
    FieldType.FIRST_NAME: [
        (r"\bfirst ?name\b", 0.6), (r"\bgiven ?name\b", 0.6), (r"\bfname\b", 0.6),
        (r"\bforename\b", 0.6), (r"\bfirst\b", 0.2),
    ],
    FieldType.LAST_NAME: [
        (r"\blast ?name\b", 0.6), (r"\bfamily ?name\b", 0.6), (r"\bsurname\b", 0.6),
        (r"\blname\b", 0.6), (r"\blast\b", 0.2),
    ],
    FieldType.FULL_NAME: [
        (r"\bfull ?name\b", 0.6), (r"^name$", 0.5), (r"\byour ?name\b", 0.4),
        (r"\bcustomer ?name\b", 0.4), (r"\bcard ?holder\b|\bname on card\b", 0.4),
    ],
    FieldType.EMAIL: [
        (r"\be ?mail\b", 0.6), (r"\be ?mail ?addr(ess)?\b", 0.3), (r"@", 0.2),
    ],
    FieldType.PHONE: [
        (r"\bphone\b|\btel(ephone)?\b", 0.6), (r"\bmobile\b", 0.5), (r"\bcell\b", 0.4),
        (r"\bcontact ?number\b", 0.4), (r"\bph\b", 0.2),
    ],
    FieldType.STREET: [
        (r"\bstreet\b", 0.5), (r"\baddress ?(line ?)?1\b|\baddr ?1\b", 0.6),
        (r"\baddress\b|\baddr\b", 0.4),
    ],
    FieldType.CITY: [
        (r"\bcity\b", 0.6), (r"\btown\b", 0.5), (r"\blocality\b", 0.5),
        (r"\baddress ?level ?2\b", 0.4),
    ],
    FieldType.STATE: [
        (r"\bstate\b", 0.5), (r"\bprovince\b", 0.6), (r"\bregion\b", 0.4), (r"\bcounty\b", 0.3),
    ],
    FieldType.ZIP: [
        (r"\bzip\b|\bzipcode\b", 0.6), (r"\bpostal\b", 0.6), (r"\bpost ?code\b", 0.6),
    ],
    FieldType.COUNTRY: [
        (r"\bcountry\b", 0.6), (r"\bnation\b", 0.3),
    ],
    FieldType.CARD_NUMBER: [
        (r"\bcard ?(number|num|no)\b", 0.6), (r"\bcc ?(number|num|no)\b", 0.6),
        (r"\bcredit ?card\b", 0.5), (r"\bpan\b", 0.2),
    ],
    FieldType.CVV: [
        (r"\bcvv2?\b|\bcvc\b|\bcsc\b", 0.6), (r"\bsecurity ?code\b", 0.5),
        (r"\bcard ?(verification|code)\b", 0.5),
    ],
    FieldType.EXPIRY_DATE: [
        (r"\bexp(iry|iration|ires)?\b", 0.5), (r"\bexp(iry|iration)? ?date\b", 0.3),
        (r"\bvalid ?(thru|through)\b", 0.5), (r"\bmm ?yy\b", 0.4),
    ],
    FieldType.COMPANY: [
        (r"\bcompany\b", 0.6), (r"\borgani[sz]ation\b", 0.6), (r"\bemployer\b", 0.5),
        (r"\bbusiness\b", 0.3),
    ],
    FieldType.JOB_TITLE: [
        (r"\bjob ?title\b", 0.6), (r"\boccupation\b", 0.5), (r"\bposition\b", 0.4),
        (r"\brole\b", 0.3), (r"\btitle\b", 0.2),
    ],
    FieldType.WEBSITE: [
        (r"\bweb ?site\b|\bweb ?address\b", 0.6), (r"\bhomepage\b", 0.5), (r"\burl\b", 0.4),
    ],
    FieldType.LINKEDIN: [
        (r"\blinked ?in\b", 0.7), (r"\bprofile ?url\b", 0.3),
    ],
    FieldType.PASSWORD: [
        (r"\bpass ?word\b|\bpasswd\b|\bpwd\b", 0.6), (r"\bpass ?phrase\b", 0.4),
    ],
}

# Section keyword groups and the kinds they support
CONTEXT_GROUPS: dict[str, tuple[tuple[str, ...], frozenset[FieldType]]] = {
    "personal": (
        ("personal", "profile", "contact", "about you", "your details"),
        frozenset({FieldType.FIRST_NAME, FieldType.LAST_NAME, FieldType.FULL_NAME,
                   FieldType.EMAIL, FieldType.PHONE}),
    ),
    "address": (
        ("address", "shipping", "billing", "delivery", "location"),
        frozenset({FieldType.STREET, FieldType.CITY, FieldType.STATE, FieldType.ZIP,
                   FieldType.COUNTRY}),
    ),
    "payment": (
        ("payment", "card", "checkout", "billing"),
        frozenset({FieldType.CARD_NUMBER, FieldType.CVV, FieldType.EXPIRY_DATE}),
    ),
    "work": (
        ("work", "job", "career", "professional", "employment", "experience"),
        frozenset({FieldType.COMPANY, FieldType.JOB_TITLE, FieldType.WEBSITE,
                   FieldType.LINKEDIN}),
    ),
}


@dataclass
class PatternSignal:
    """One weighted pattern. Compiled lazily so bad patterns fail in isolation."""
    pattern: str
    weight: float
    origin: str = "builtin"
    _compiled: re.Pattern | None = field(default=None, repr=False, compare=False)

    def compiled(self) -> re.Pattern:
        if self._compiled is None:
            try:
                self._compiled = re.compile(self.pattern, re.IGNORECASE)
            except (re.error, TypeError) as e:
                raise SignalEvaluationError(
                    f"Malformed pattern {self.pattern!r}: {e}",
                    signal=self.pattern,
                    stage="pattern",
                )
        return self._compiled

    def search(self, text: str) -> bool:
        if not isinstance(self.weight, (int, float)):
            raise SignalEvaluationError(
                f"Pattern {self.pattern!r} has non-numeric weight {self.weight!r}",
                signal=self.pattern,
                stage="pattern",
            )
        return self.compiled().search(text) is not None


@dataclass
class TypeScore:
    """Score breakdown for one FieldType."""
    field_type: FieldType
    score: float = 0.0
    pattern_hits: list[str] = field(default_factory=list)
    sources: set[str] = field(default_factory=set)
    input_type_hit: bool = False
    context_group: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.field_type.value,
            "score": round(self.score, 3),
            "patterns": list(self.pattern_hits),
            "sources": sorted(self.sources),
            "input_type": self.input_type_hit,
            "context": self.context_group,
        }


def snapshot_sources(snapshot: ElementSnapshot) -> dict[str, str]:
    """Normalized text per scoring source."""
    return {
        "name": normalize_text(snapshot.name),
        "id": normalize_text(snapshot.id),
        "label": normalize_text(snapshot.label),
        "aria_label": normalize_text(snapshot.aria_label),
        "placeholder": normalize_text(snapshot.placeholder),
        "title": normalize_text(snapshot.title),
    }


class PatternTable:
    """Weighted regex signal sets per FieldType."""

    def __init__(self, patterns: dict[FieldType, list[tuple[str, float]]] | None = None):
        self._signals: dict[FieldType, list[PatternSignal]] = {t: [] for t in FieldType.known()}
        for field_type, entries in (patterns if patterns is not None else DEFAULT_PATTERNS).items():
            for pattern, weight in entries:
                self._signals[field_type].append(PatternSignal(pattern, weight))

    def add(self, field_type: FieldType, pattern: str, weight: float, origin: str = "custom") -> bool:
        """Add a pattern unless an identical one exists. Returns True if added."""
        signals = self._signals.setdefault(field_type, [])
        if any(s.pattern == pattern for s in signals):
            return False
        signals.append(PatternSignal(pattern, weight, origin))
        return True

    def remove_origin(self, origin: str) -> int:
        """Drop every pattern added with the given origin."""
        removed = 0
        for field_type, signals in self._signals.items():
            kept = [s for s in signals if s.origin != origin]
            removed += len(signals) - len(kept)
            self._signals[field_type] = kept
        return removed

    def signals_for(self, field_type: FieldType) -> list[PatternSignal]:
        return list(self._signals.get(field_type, []))

    def score(
        self,
        snapshot: ElementSnapshot,
        context_boost: float = 0.1,
        on_error: Callable[[SignalEvaluationError], None] | None = None,
    ) -> dict[FieldType, TypeScore]:
        """
        Score every FieldType for one element.

        A signal that raises SignalEvaluationError is skipped; on_error is
        told about it and scoring continues with the remaining signals.
        """
        sources = {k: v for k, v in snapshot_sources(snapshot).items() if v}
        section = normalize_text(f"{snapshot.section_text} {snapshot.parent_text}")
        broken: set[int] = set()
        scores: dict[FieldType, TypeScore] = {}

        for field_type, signals in self._signals.items():
            result = TypeScore(field_type)

            for signal in signals:
                best = 0.0
                for source, text in sources.items():
                    if id(signal) in broken:
                        break
                    try:
                        hit = signal.search(text)
                    except SignalEvaluationError as e:
                        broken.add(id(signal))
                        e.fingerprint = snapshot.fingerprint
                        if on_error is not None:
                            on_error(e)
                        break
                    if hit:
                        best = max(best, signal.weight * SOURCE_WEIGHTS.get(source, 0.5))
                        result.sources.add(source)
                if best > 0:
                    result.score += best
                    result.pattern_hits.append(signal.pattern)

            if len(result.sources) > 1:
                result.score += CORROBORATION_BONUS * (len(result.sources) - 1)

            hint = INPUT_TYPE_SIGNALS.get(snapshot.input_type)
            if hint is not None and hint[0] is field_type:
                result.score += hint[1]
                result.input_type_hit = True

            if result.score > 0 and section:
                for group, (keywords, kinds) in CONTEXT_GROUPS.items():
                    if field_type in kinds and any(k in section for k in keywords):
                        result.score += context_boost
                        result.context_group = group
                        break

            result.score = min(result.score, 1.0)
            if result.score > 0:
                scores[field_type] = result

        return scores


def best_match(scores: dict[FieldType, TypeScore], min_score: float) -> TypeScore | None:
    """
    Pick the highest score at or above min_score.

    Ties go to the kind declared first in FieldType.
    """
    best: TypeScore | None = None
    for field_type in FieldType.known():
        candidate = scores.get(field_type)
        if candidate is None or candidate.score < min_score:
            continue
        if best is None or candidate.score > best.score:
            best = candidate
    return best

"""
Field detector.

Classifies one element snapshot into a FieldType with a score, trying the
signal sources in fixed precedence:

1. site rule (selector match; exclusions mean "not a target")
2. learned correction for the element signature
3. declared autocomplete token
4. input type and weighted name/id/label patterns

A learned correction outranks autocomplete and pattern results but never
a site rule. Every result, including "nothing found", is cached by
fingerprint so unchanged elements are not rescored on every mutation.
"""

from typing import Any
import logging
import re

import soupsieve

from fieldfill.config import CoreConfig
from fieldfill.errors import ErrorReporter, SignalEvaluationError
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.intelligence.learning_store import LearningStore
from fieldfill.intelligence.site_rules import SiteRule, SiteRulesEngine, StepInfo
from fieldfill.models import DetectedField, DetectionMethod, FieldType
from fieldfill.signals import AUTOCOMPLETE_MAP, PatternTable, best_match
from fieldfill.snapshot import ElementSnapshot

logger = logging.getLogger(__name__)

# Weight of patterns promoted from learned corrections
LEARNED_PATTERN_WEIGHT = 0.3

# Corrections needed before retraining does anything
MIN_RETRAIN_ENTRIES = 10


class FieldDetector:
    """Multi-signal classifier with a fingerprint-keyed result cache."""

    def __init__(
        self,
        cache: CacheManager,
        site_rules: SiteRulesEngine,
        learning: LearningStore,
        reporter: ErrorReporter | None = None,
        config: CoreConfig | None = None,
        patterns: PatternTable | None = None,
    ):
        self.cache = cache
        self.site_rules = site_rules
        self.learning = learning
        self.reporter = reporter or ErrorReporter()
        self.config = config or CoreConfig()
        self.patterns = patterns or PatternTable()
        self._in_flight: set[str] = set()
        self._reported_signals: set[str] = set()
        self.scoring_runs = 0

    def cache_key(self, snapshot: ElementSnapshot, step: StepInfo | None = None) -> str:
        """Field cache key: the fingerprint, qualified by the active step if any."""
        if step is None:
            return snapshot.fingerprint
        return f"{snapshot.fingerprint}:{step.step}"

    def classify(self, snapshot: ElementSnapshot) -> DetectedField | None:
        """
        Classify one element.

        Returns the cached result when the fingerprint was seen before.
        Returns None, without scoring or caching, when a classification of
        the same fingerprint is already in progress.
        """
        rule, step = self._rule_and_step(snapshot)
        key = self.cache_key(snapshot, step)

        if key in self._in_flight:
            logger.debug(f"Classification of {key} already in flight, skipping")
            return None

        entry = self.cache.field_cache.get(key)
        if entry is not None:
            return entry.data

        self._in_flight.add(key)
        try:
            result = self._detect(snapshot, rule, step)
            self.cache.field_cache.put(key, result, context=result.context)
            return result
        finally:
            self._in_flight.discard(key)

    def is_in_flight(self, snapshot: ElementSnapshot) -> bool:
        return any(k.startswith(snapshot.fingerprint) for k in self._in_flight)

    def forget(self, snapshot: ElementSnapshot) -> int:
        """Drop cached results for an element that was removed or changed."""
        prefix = snapshot.fingerprint
        return self.cache.field_cache.invalidate_where(lambda key, _entry: key.startswith(prefix))

    # ---------------------------------------------------------------------
    # Detection
    # ---------------------------------------------------------------------

    def _rule_and_step(self, snapshot: ElementSnapshot) -> tuple[SiteRule | None, StepInfo | None]:
        if not snapshot.hostname:
            return None, None
        rule = self.site_rules.match(snapshot.hostname)
        if rule is None:
            return None, None
        step = self.site_rules.resolve_step(rule, snapshot.session_id, snapshot.step_marker)
        return rule, step

    def _detect(
        self,
        snapshot: ElementSnapshot,
        rule: SiteRule | None,
        step: StepInfo | None,
    ) -> DetectedField:
        if rule is not None:
            result = self._apply_rule(snapshot, rule, step)
            if result is not None:
                return result

        corrected = self.learning.lookup(snapshot.signature)
        if corrected is not None:
            return self._result(snapshot, corrected, 1.0, DetectionMethod.LEARNED)

        token = snapshot.autocomplete.strip().lower()
        if token in AUTOCOMPLETE_MAP:
            return self._result(snapshot, AUTOCOMPLETE_MAP[token], 1.0, DetectionMethod.AUTOCOMPLETE)

        self.scoring_runs += 1
        scores = self.patterns.score(snapshot, self.config.context_boost, on_error=self._report_signal_error)
        best = best_match(scores, self.config.min_pattern_score)
        if best is None:
            return self._result(snapshot, FieldType.UNKNOWN, 0.0, DetectionMethod.NONE)

        method = DetectionMethod.PATTERN
        if best.input_type_hit and not best.pattern_hits:
            method = DetectionMethod.INPUT_TYPE
        return self._result(snapshot, best.field_type, best.score, method)

    def _apply_rule(
        self,
        snapshot: ElementSnapshot,
        rule: SiteRule,
        step: StepInfo | None,
    ) -> DetectedField | None:
        exclusions = set(rule.exclusions)
        if step is not None:
            exclusions.update(step.skip)
        for selector in sorted(exclusions):
            if self._matches(snapshot, selector):
                logger.debug(f"{snapshot.fingerprint} excluded by '{selector}' on {rule.hostname}")
                return self._result(snapshot, FieldType.UNKNOWN, 0.0, DetectionMethod.SITE_RULE)

        candidates = list(step.selectors.items()) if step is not None else []
        candidates.extend(rule.selectors.items())
        for field_type, selector in candidates:
            if self._matches(snapshot, selector):
                return self._result(snapshot, field_type, 1.0, DetectionMethod.SITE_RULE)
        return None

    def _matches(self, snapshot: ElementSnapshot, selector: str) -> bool:
        if selector in self._reported_signals:
            return False
        try:
            return snapshot.matches(selector)
        except (soupsieve.SelectorSyntaxError, ValueError, TypeError, NotImplementedError) as e:
            self._report_signal_error(SignalEvaluationError(
                f"Invalid selector '{selector}': {e}",
                signal=selector,
                stage="site_rule",
                fingerprint=snapshot.fingerprint,
                hostname=snapshot.hostname,
            ))
            return False

    def _report_signal_error(self, error: SignalEvaluationError) -> None:
        # One report per broken signal; it stays skipped afterwards
        if error.signal in self._reported_signals:
            return
        self._reported_signals.add(error.signal)
        self.reporter.report(error)

    @staticmethod
    def _result(
        snapshot: ElementSnapshot,
        field_type: FieldType,
        score: float,
        method: DetectionMethod,
    ) -> DetectedField:
        return DetectedField(
            field_type=field_type,
            score=score,
            method=method,
            fingerprint=snapshot.fingerprint,
            signature=snapshot.signature,
            context=snapshot.context(),
            element_ref=snapshot.element_ref,
        )

    # ---------------------------------------------------------------------
    # Developer tooling
    # ---------------------------------------------------------------------

    def explain(self, snapshot: ElementSnapshot) -> dict[str, Any]:
        """Uncached breakdown of every signal for one element."""
        rule, step = self._rule_and_step(snapshot)
        scores = self.patterns.score(snapshot, self.config.context_boost)
        ranked = sorted(scores.values(), key=lambda s: s.score, reverse=True)
        detection = self._detect(snapshot, rule, step)
        token = snapshot.autocomplete.strip().lower()
        learned = self.learning.lookup(snapshot.signature)
        return {
            "fingerprint": snapshot.fingerprint,
            "signature": snapshot.signature,
            "rule": rule.hostname if rule is not None else None,
            "step": step.step if step is not None else None,
            "autocomplete": AUTOCOMPLETE_MAP[token].value if token in AUTOCOMPLETE_MAP else None,
            "learned": learned.value if learned is not None else None,
            "scores": [s.to_dict() for s in ranked],
            "threshold": self.config.min_pattern_score,
            "detection": detection.to_dict(),
        }

    def retrain(self) -> int:
        """
        Promote words common to repeated corrections into pattern signals.

        Returns the number of patterns added. Cached detections are dropped
        when anything changed.
        """
        if len(self.learning) < MIN_RETRAIN_ENTRIES:
            logger.debug(f"Not retraining with only {len(self.learning)} corrections")
            return 0

        added = 0
        for suggestion in self.learning.suggest_patterns():
            pattern = rf"\b{re.escape(suggestion.word)}\b"
            if self.patterns.add(suggestion.corrected_type, pattern, LEARNED_PATTERN_WEIGHT, origin="learned"):
                added += 1
                logger.info(f"Added learned pattern {pattern!r} for {suggestion.corrected_type.value}")

        if added:
            self.cache.field_cache.clear()
        return added

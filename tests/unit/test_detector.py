"""Unit tests for FieldDetector."""

import pytest

from fieldfill.config import CoreConfig
from fieldfill.detector import MIN_RETRAIN_ENTRIES, FieldDetector
from fieldfill.errors import ErrorReporter
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.intelligence.learning_store import LearningStore
from fieldfill.intelligence.site_rules import DEFAULT_SITE_RULES, SiteRulesEngine
from fieldfill.models import Confidence, DetectionMethod, FieldType
from fieldfill.scheduling import ManualClock, TaskQueue
from fieldfill.signals import PatternTable
from fieldfill.snapshot import ElementSnapshot, snapshots_from_html
from fieldfill.storage import MemoryBackend, StorageAdapter

CHECKOUT_RULES = {
    "shop.example.com": {
        "selectors": {"phone": 'input[name="contact"]'},
        "exclusions": ['input[name="promo"]'],
        "steps": [
            {"name": "address", "selectors": {"street": 'input[name="line1"]'}},
            {"name": "payment", "selectors": {"card_number": 'input[name="pan"]'},
             "skip": ['input[name="cvc"]']},
        ],
    },
}


class TestFieldDetector:
    """Tests for classification precedence, caching and error handling."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def config(self):
        return CoreConfig()

    @pytest.fixture
    def reporter(self):
        return ErrorReporter()

    @pytest.fixture
    def cache(self, config, clock):
        return CacheManager(config, clock)

    @pytest.fixture
    def queue(self, clock):
        return TaskQueue(clock)

    @pytest.fixture
    def site_rules(self, cache, queue, reporter, config):
        return SiteRulesEngine(cache, queue, reporter, config)

    @pytest.fixture
    def learning(self, cache, queue, reporter, config):
        storage = StorageAdapter(MemoryBackend(), cache, queue, reporter, config)
        return LearningStore(storage, cache, config)

    @pytest.fixture
    def detector(self, cache, site_rules, learning, reporter, config):
        return FieldDetector(cache, site_rules, learning, reporter, config)

    def correct(self, learning, snapshot, corrected, detected=FieldType.UNKNOWN):
        return learning.record_correction(detected, corrected, snapshot.signals(), snapshot.signature)

    # ------------------------------------------------------------------
    # Signal precedence
    # ------------------------------------------------------------------

    def test_autocomplete_token(self, detector):
        """Test that a known autocomplete token is a certain match."""
        result = detector.classify(ElementSnapshot(name="cardfield", autocomplete="cc-number"))

        assert result.field_type is FieldType.CARD_NUMBER
        assert result.score == 1.0
        assert result.confidence is Confidence.HIGH
        assert result.method is DetectionMethod.AUTOCOMPLETE

    def test_autocomplete_beats_patterns(self, detector):
        """Test that autocomplete wins however strongly the name points elsewhere."""
        result = detector.classify(ElementSnapshot(name="phone_number", label="Phone", autocomplete="email"))

        assert result.field_type is FieldType.EMAIL
        assert result.method is DetectionMethod.AUTOCOMPLETE

    def test_autocomplete_token_normalized(self, detector):
        result = detector.classify(ElementSnapshot(autocomplete=" Postal-Code "))

        assert result.field_type is FieldType.ZIP

    def test_pattern_match(self, detector):
        """Test the documented email_addr example."""
        result = detector.classify(ElementSnapshot(name="email_addr"))

        assert result.field_type is FieldType.EMAIL
        assert result.method is DetectionMethod.PATTERN
        assert result.confidence is Confidence.HIGH
        assert result.score == pytest.approx(0.9)

    def test_input_type_only(self, detector):
        result = detector.classify(ElementSnapshot(input_type="email", name="f1"))

        assert result.field_type is FieldType.EMAIL
        assert result.method is DetectionMethod.INPUT_TYPE
        assert result.confidence is Confidence.MEDIUM

    def test_no_signal(self, detector):
        """Test that an element without any signal is not a target."""
        result = detector.classify(ElementSnapshot(name="zqx"))

        assert result.field_type is FieldType.UNKNOWN
        assert result.method is DetectionMethod.NONE
        assert result.confidence is Confidence.NONE
        assert not result.is_target

    def test_below_threshold_is_unknown(self, detector):
        """Test that a score under the minimum does not win."""
        result = detector.classify(ElementSnapshot(title="ph"))

        assert result.field_type is FieldType.UNKNOWN

    def test_context_boost(self, detector):
        result = detector.classify(ElementSnapshot(name="city", section_text="Billing address"))

        assert result.score == pytest.approx(0.7)
        assert result.confidence is Confidence.MEDIUM

    def test_learned_beats_autocomplete(self, detector, learning):
        snapshot = ElementSnapshot(name="contact", autocomplete="email")
        self.correct(learning, snapshot, FieldType.PHONE)

        result = detector.classify(snapshot)

        assert result.field_type is FieldType.PHONE
        assert result.method is DetectionMethod.LEARNED
        assert result.confidence is Confidence.LEARNED

    def test_site_rule_beats_autocomplete(self, detector, site_rules):
        site_rules.load_site_rules(CHECKOUT_RULES)
        snapshot = ElementSnapshot(name="contact", autocomplete="email", hostname="shop.example.com")

        result = detector.classify(snapshot)

        assert result.field_type is FieldType.PHONE
        assert result.score == 1.0
        assert result.method is DetectionMethod.SITE_RULE

    def test_site_rule_beats_learned(self, detector, site_rules, learning):
        """Test that a learned correction never overrides a site rule."""
        site_rules.load_site_rules(CHECKOUT_RULES)
        snapshot = ElementSnapshot(name="contact", hostname="shop.example.com")
        self.correct(learning, snapshot, FieldType.EMAIL)

        assert detector.classify(snapshot).field_type is FieldType.PHONE

    def test_site_rule_exclusion(self, detector, site_rules):
        """Test that an excluded element is never a target, whatever its signals."""
        site_rules.load_site_rules(CHECKOUT_RULES)

        result = detector.classify(ElementSnapshot(name="promo", autocomplete="email", hostname="shop.example.com"))

        assert result.field_type is FieldType.UNKNOWN
        assert result.method is DetectionMethod.SITE_RULE
        assert result.score == 0.0
        assert not result.is_target

    def test_no_rule_for_other_hosts(self, detector, site_rules):
        site_rules.load_site_rules(CHECKOUT_RULES)

        result = detector.classify(ElementSnapshot(name="contact", hostname="elsewhere.test"))

        assert result.method is not DetectionMethod.SITE_RULE

    def test_unmatched_rule_falls_through(self, detector, site_rules):
        """Test that a rule without a matching selector leaves the other signals in charge."""
        site_rules.load_site_rules(CHECKOUT_RULES)

        result = detector.classify(ElementSnapshot(name="zip", hostname="shop.example.com"))

        assert result.field_type is FieldType.ZIP
        assert result.method is DetectionMethod.PATTERN

    def test_live_tag_selector_with_combinator(self, detector, site_rules):
        """Test that selectors can use ancestors when the live tag is available."""
        site_rules.load_site_rules({"example.com": {"selectors": {"company": "form#work input"}}})
        soup, snapshots = snapshots_from_html(
            '<form id="work"><input name="x9"></form>', hostname="example.com"
        )

        result = detector.classify(snapshots[0])

        assert result.field_type is FieldType.COMPANY
        assert result.element is soup.find("input")

    # ------------------------------------------------------------------
    # Multi-step rules
    # ------------------------------------------------------------------

    def test_step_selectors(self, detector, site_rules):
        """Test that the active step's selectors apply and change after completion."""
        site_rules.load_site_rules(CHECKOUT_RULES)
        pan = ElementSnapshot(name="pan", hostname="shop.example.com", session_id="s1")

        before = detector.classify(pan)
        site_rules.complete_step("s1")
        after = detector.classify(pan)

        assert before.method is DetectionMethod.PATTERN
        assert after.field_type is FieldType.CARD_NUMBER
        assert after.method is DetectionMethod.SITE_RULE

    def test_step_skip_list(self, detector, site_rules):
        site_rules.load_site_rules(CHECKOUT_RULES)
        cvc = ElementSnapshot(name="cvc", hostname="shop.example.com", session_id="s1")
        site_rules.resolve_step(site_rules.match("shop.example.com"), "s1")
        site_rules.complete_step("s1")

        result = detector.classify(cvc)

        assert result.field_type is FieldType.UNKNOWN
        assert result.method is DetectionMethod.SITE_RULE

    def test_page_url_positions_fresh_session(self, detector, site_rules):
        """Test that landing directly on the payment page applies the payment step."""
        site_rules.load_site_rules(DEFAULT_SITE_RULES)
        cvv = ElementSnapshot(
            name="addCreditCardVerificationNumber",
            hostname="www.amazon.com",
            session_id="s1",
            step_marker="https://www.amazon.com/checkout/payment?ref=cart",
        )

        result = detector.classify(cvv)

        assert result.field_type is FieldType.UNKNOWN
        assert result.method is DetectionMethod.SITE_RULE
        assert site_rules.get_session("s1").current_step.name == "payment"

    def test_step_name_marker(self, detector, site_rules):
        site_rules.load_site_rules(CHECKOUT_RULES)
        pan = ElementSnapshot(name="pan", hostname="shop.example.com", session_id="s1", step_marker="payment")

        result = detector.classify(pan)

        assert result.field_type is FieldType.CARD_NUMBER
        assert result.method is DetectionMethod.SITE_RULE

    def test_marker_ignored_by_running_session(self, detector, site_rules):
        """Test that a marker does not move a session that already started."""
        site_rules.load_site_rules(CHECKOUT_RULES)
        detector.classify(ElementSnapshot(name="line1", hostname="shop.example.com", session_id="s1"))

        result = detector.classify(
            ElementSnapshot(name="cvc", hostname="shop.example.com", session_id="s1", step_marker="payment")
        )

        assert result.method is not DetectionMethod.SITE_RULE
        assert site_rules.get_session("s1").current_step.name == "address"

    def test_cache_key_includes_step(self, detector, site_rules, cache):
        site_rules.load_site_rules(CHECKOUT_RULES)
        snapshot = ElementSnapshot(name="line1", hostname="shop.example.com", session_id="s1")

        detector.classify(snapshot)

        assert f"{snapshot.fingerprint}:address" in cache.field_cache

    # ------------------------------------------------------------------
    # Caching
    # ------------------------------------------------------------------

    def test_classify_is_cached(self, detector):
        """Test that an unchanged element is scored once."""
        snapshot = ElementSnapshot(name="email_addr")

        first = detector.classify(snapshot)
        second = detector.classify(ElementSnapshot(name="email_addr"))

        assert first is second
        assert detector.scoring_runs == 1

    def test_cache_expiry_rescores(self, detector, clock):
        snapshot = ElementSnapshot(name="email_addr")
        detector.classify(snapshot)

        clock.advance(5 * 60 * 1000)
        detector.classify(snapshot)

        assert detector.scoring_runs == 2

    def test_correction_invalidates_cached_result(self, detector, learning, cache):
        """Test that a correction replaces the cached result for every element of that signature."""
        first = ElementSnapshot(name="handle", label="Handle", position=1)
        second = ElementSnapshot(name="handle", label="Handle", position=7)
        detector.classify(first)
        detector.classify(second)

        self.correct(learning, first, FieldType.EMAIL)

        assert cache.field_cache.get(first.fingerprint) is None
        assert detector.classify(first).method is DetectionMethod.LEARNED
        assert detector.classify(second).field_type is FieldType.EMAIL

    def test_forget(self, detector, cache):
        snapshot = ElementSnapshot(name="email")
        detector.classify(snapshot)

        assert detector.forget(snapshot) == 1
        assert cache.field_cache.size() == 0

    def test_reentrant_classify_returns_none(self, cache, site_rules, learning, reporter, config):
        """Test that classifying an element already in flight is a no-op."""
        inner_results = []

        class ReentrantTable(PatternTable):
            def score(self, snapshot, context_boost=0.1, on_error=None):
                inner_results.append(detector.classify(snapshot))
                assert detector.is_in_flight(snapshot)
                return super().score(snapshot, context_boost, on_error)

        detector = FieldDetector(cache, site_rules, learning, reporter, config, patterns=ReentrantTable())
        snapshot = ElementSnapshot(name="email")

        result = detector.classify(snapshot)

        assert inner_results == [None]
        assert result.field_type is FieldType.EMAIL
        assert not detector.is_in_flight(snapshot)
        assert detector.scoring_runs == 1

    # ------------------------------------------------------------------
    # Broken signals
    # ------------------------------------------------------------------

    def test_invalid_selector_reported_once_and_skipped(self, detector, site_rules, reporter):
        """Test that a malformed selector is reported once and the next selector still works."""
        site_rules.load_site_rules({
            "example.com": {"selectors": {"email": "input[[", "phone": 'input[name="tel"]'}},
        })

        first = detector.classify(ElementSnapshot(name="tel", hostname="example.com"))
        detector.classify(ElementSnapshot(name="other", hostname="example.com"))

        assert first.field_type is FieldType.PHONE
        reports = reporter.by_kind("signal_evaluation")
        assert len(reports) == 1
        assert reports[0].stage == "site_rule"
        assert reports[0].fatal is False

    def test_invalid_pattern_reported_once(self, cache, site_rules, learning, reporter, config):
        table = PatternTable({FieldType.EMAIL: [("(unclosed", 0.5), (r"\bemail\b", 0.6)]})
        detector = FieldDetector(cache, site_rules, learning, reporter, config, patterns=table)

        result = detector.classify(ElementSnapshot(name="email"))
        detector.classify(ElementSnapshot(name="email", position=2))

        assert result.field_type is FieldType.EMAIL
        assert len(reporter.by_kind("signal_evaluation")) == 1

    # ------------------------------------------------------------------
    # Developer tooling and retraining
    # ------------------------------------------------------------------

    def test_explain(self, detector):
        snapshot = ElementSnapshot(name="email_addr")

        report = detector.explain(snapshot)

        assert report["scores"][0]["type"] == "email"
        assert report["detection"]["type"] == "email"
        assert report["threshold"] == 0.2
        assert report["rule"] is None
        assert detector.cache.field_cache.size() == 0

    def test_retrain_needs_enough_corrections(self, detector, learning):
        for i in range(MIN_RETRAIN_ENTRIES - 1):
            self.correct(learning, ElementSnapshot(name=f"f{i}", label="Handle"), FieldType.PHONE)

        assert detector.retrain() == 0

    def test_retrain_adds_learned_patterns(self, detector, learning, cache):
        """Test that words shared by repeated corrections become pattern signals."""
        for i in range(MIN_RETRAIN_ENTRIES):
            self.correct(learning, ElementSnapshot(name=f"f{i}", label="Handle"), FieldType.PHONE)
        cache.field_cache.put("stale", "value")

        added = detector.retrain()

        assert added == 1
        assert cache.field_cache.size() == 0
        result = detector.classify(ElementSnapshot(name="x7", label="Your handle"))
        assert result.field_type is FieldType.PHONE
        assert result.score == pytest.approx(0.3 * 0.9)
        assert detector.retrain() == 0

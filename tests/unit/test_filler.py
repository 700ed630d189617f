"""Unit tests for fill planning."""

import pytest

from fieldfill.filler import plan_fill, schedule_fill
from fieldfill.intelligence.site_rules import build_rule
from fieldfill.models import DetectedField, DetectionMethod, FieldType
from fieldfill.profile import Profile
from fieldfill.scheduling import ManualClock, TaskQueue


def detected(field_type, score=0.9, method=DetectionMethod.PATTERN, fingerprint=None):
    return DetectedField(
        field_type=field_type,
        score=score,
        method=method,
        fingerprint=fingerprint or f"fp-{field_type.value}",
        signature=f"sig-{field_type.value}",
    )


@pytest.fixture
def profile():
    profile = Profile()
    profile.set(FieldType.FIRST_NAME, "Ada")
    profile.set(FieldType.EMAIL, "ada@example.com")
    profile.set(FieldType.PHONE, "+44 20 7946 0000")
    profile.set(FieldType.COMPANY, "Analytical Engines")
    profile.set(FieldType.CARD_NUMBER, "4111111111111111")
    return profile


class TestPlanFill:
    """Tests for plan_fill."""

    def test_fills_confident_fields(self, profile):
        plan = plan_fill([detected(FieldType.FIRST_NAME), detected(FieldType.EMAIL, 0.6)], profile)

        assert [a.value for a in plan.actions] == ["Ada", "ada@example.com"]
        assert plan.skipped == []
        assert plan.total_ms == 0

    def test_learned_results_filled(self, profile):
        plan = plan_fill([detected(FieldType.PHONE, 1.0, DetectionMethod.LEARNED)], profile)

        assert plan.actions[0].field_type == "phone"

    def test_skip_reasons(self, profile):
        """Test that each kind of unfillable field is skipped with its reason."""
        fields = [
            detected(FieldType.UNKNOWN, 0.0, DetectionMethod.NONE),
            detected(FieldType.EMAIL, 0.3),
            detected(FieldType.CARD_NUMBER, 1.0, DetectionMethod.AUTOCOMPLETE),
            detected(FieldType.CITY),
        ]

        plan = plan_fill(fields, profile)

        assert plan.actions == []
        assert [s.reason for s in plan.skipped] == ["not_target", "low_confidence", "sensitive", "no_value"]

    def test_allow_sensitive(self, profile):
        plan = plan_fill(
            [detected(FieldType.CARD_NUMBER, 1.0, DetectionMethod.AUTOCOMPLETE)], profile, allow_sensitive=True
        )

        assert plan.actions[0].value == "4111111111111111"

    def test_rule_restricted_types(self, profile):
        """Test that kinds restricted by the site rule are skipped even when allowed."""
        rule = build_rule("bank.example.com", {"restricted_types": ["card_number", "phone"]})

        plan = plan_fill(
            [detected(FieldType.CARD_NUMBER), detected(FieldType.PHONE), detected(FieldType.EMAIL)],
            profile,
            rule,
            allow_sensitive=True,
        )

        assert [a.field_type for a in plan.actions] == ["email"]
        assert [s.reason for s in plan.skipped] == ["restricted", "restricted"]

    def test_rule_delays_accumulate(self, profile):
        """Test that per-type delays produce cumulative fill offsets."""
        rule = build_rule("shop.example.com", {"delays": {"email": 200}, "default_delay_ms": 100})

        plan = plan_fill(
            [detected(FieldType.FIRST_NAME), detected(FieldType.EMAIL), detected(FieldType.PHONE)],
            profile,
            rule,
        )

        assert [(a.delay_ms, a.at_ms) for a in plan.actions] == [(100, 100), (200, 300), (100, 400)]
        assert plan.total_ms == 400

    def test_custom_handlers_passed_through(self, profile):
        rule = build_rule("accounts.example.com", {"custom_handlers": {"before_fill": "handleBeforeFill"}})

        plan = plan_fill([], profile, rule)

        assert plan.custom_handlers == {"before_fill": "handleBeforeFill"}

    def test_section(self, profile):
        plan = plan_fill([detected(FieldType.COMPANY), detected(FieldType.EMAIL)], profile, section="work")

        assert [a.field_type for a in plan.actions] == ["company"]
        assert plan.skipped[0].reason == "no_value"

    def test_unknown_section(self, profile):
        """Test that a non-section attribute name is refused even with no fields."""
        with pytest.raises(ValueError, match="Unknown profile section"):
            plan_fill([], profile, section="schema_version")

    def test_to_dict(self, profile):
        data = plan_fill([detected(FieldType.EMAIL)], profile).to_dict()

        assert data["actions"][0] == {
            "fingerprint": "fp-email",
            "type": "email",
            "value": "ada@example.com",
            "delay_ms": 0,
            "at_ms": 0,
        }
        assert data["total_ms"] == 0


class TestScheduleFill:
    """Tests for schedule_fill."""

    def test_actions_run_at_their_offsets(self, profile):
        clock = ManualClock()
        queue = TaskQueue(clock)
        rule = build_rule("shop.example.com", {"default_delay_ms": 100})
        plan = plan_fill([detected(FieldType.FIRST_NAME), detected(FieldType.EMAIL)], profile, rule)
        applied = []

        schedule_fill(plan, queue, lambda action: applied.append((clock.now_ms(), action.value)))
        queue.advance(150)
        assert applied == [(100, "Ada")]

        queue.advance(50)
        assert applied == [(100, "Ada"), (200, "ada@example.com")]

    def test_cancel(self, profile):
        queue = TaskQueue(ManualClock())
        plan = plan_fill([detected(FieldType.EMAIL)], profile)
        applied = []

        for handle in schedule_fill(plan, queue, applied.append):
            queue.cancel(handle)
        queue.advance(10)

        assert applied == []

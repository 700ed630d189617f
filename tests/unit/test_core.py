"""Unit tests for AutofillCore and its message contract."""

import sqlite3

import pytest

from fieldfill.core import AutofillCore
from fieldfill.models import DetectionMethod, FieldType
from fieldfill.profile import Profile
from fieldfill.scheduling import ManualClock
from fieldfill.storage import MemoryBackend

STEP_RULES = {
    "checkout.example.com": {
        "steps": [
            {"name": "address", "selectors": {"street": 'input[name="line1"]'}},
            {"name": "payment", "url_pattern": "/checkout/payment",
             "selectors": {"card_number": 'input[name="pan"]'}},
        ],
    },
}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def reports():
    return []


@pytest.fixture
def core(clock, reports):
    core = AutofillCore(clock=clock, on_report=reports.append)
    yield core
    core.close()


class TestAutofillCore:
    """Tests for the direct API."""

    def test_classify_dict_payload(self, core):
        detected = core.classify({"name": "email_addr"})

        assert detected.field_type is FieldType.EMAIL

    def test_classify_rejects_other_types(self, core):
        with pytest.raises(TypeError):
            core.classify("email")

    def test_classify_many_skips_nothing_found(self, core):
        results = core.classify_many([{"name": "email"}, {"name": "zqx", "position": 1}])

        assert [r.field_type for r in results] == [FieldType.EMAIL, FieldType.UNKNOWN]

    def test_record_correction_and_reclassify(self, core):
        payload = {"name": "handle", "label": "Handle"}
        core.classify(payload)

        core.record_correction(payload, "unknown", "email")

        detected = core.classify(payload)
        assert detected.field_type is FieldType.EMAIL
        assert detected.method is DetectionMethod.LEARNED

    def test_corrections_persist_across_instances(self, clock):
        """Test that a new core on the same backend knows earlier corrections."""
        backend = MemoryBackend()
        first = AutofillCore(clock=clock, backend=backend)
        first.record_correction({"name": "handle"}, FieldType.UNKNOWN, FieldType.PHONE)
        first.flush()

        second = AutofillCore(clock=clock, backend=backend)

        assert second.classify({"name": "handle"}).field_type is FieldType.PHONE
        assert second.storage_stats()["learning"]["entries"] == 1

    def test_default_rules(self, clock):
        core = AutofillCore(clock=clock, load_default_rules=True)

        detected = core.classify({"name": "Passwd", "type": "password", "hostname": "accounts.google.com"})

        assert detected.field_type is FieldType.UNKNOWN
        assert detected.method is DetectionMethod.SITE_RULE

    def test_step_flow(self, core):
        core.load_site_rules(STEP_RULES)
        pan = {"name": "pan", "hostname": "checkout.example.com", "session_id": "tab-1"}

        assert core.classify(pan).method is DetectionMethod.PATTERN
        step = core.step_completed("tab-1")
        assert step.step == "payment"
        assert core.classify(pan).field_type is FieldType.CARD_NUMBER

        core.navigate("tab-1")
        assert core.classify(pan).method is DetectionMethod.PATTERN

    def test_stall_reported_to_host(self, core, reports):
        core.load_site_rules(STEP_RULES)
        core.classify({"name": "line1", "hostname": "checkout.example.com", "session_id": "tab-1"})

        core.task_queue.advance(core.config.default_step_wait_ms + core.config.step_stall_timeout_ms)

        assert [r.kind for r in reports] == ["step_stall"]
        assert reports[0].fatal

    def test_plan_fill(self, core):
        profile = Profile()
        profile.set(FieldType.EMAIL, "ada@example.com")
        core.save_profile(profile)
        core.load_site_rules({"example.com": {"default_delay_ms": 250}})
        fields = core.classify_many([{"name": "email", "hostname": "example.com"}])

        plan = core.plan_fill(fields, hostname="example.com")

        assert plan.actions[0].value == "ada@example.com"
        assert plan.actions[0].at_ms == 250

    def test_plan_fill_unknown_section(self, core):
        fields = core.classify_many([{"name": "email"}])

        with pytest.raises(ValueError, match="Unknown profile section"):
            core.plan_fill(fields, section="schema_version")

    def test_backend_failure_reported_not_raised(self, clock, reports):
        """Test that a backend refusing writes reaches the host as a warning."""
        class FullDisk(MemoryBackend):
            def set_many(self, storage_type, items):
                raise sqlite3.OperationalError("database or disk is full")

        core = AutofillCore(clock=clock, backend=FullDisk(), on_report=reports.append)
        core.record_correction({"name": "handle"}, "unknown", "phone")

        core.task_queue.advance(core.config.batch_window_ms)
        core.record_correction({"name": "other"}, "unknown", "email")
        core.flush()
        core.close()

        assert [r.kind for r in reports] == ["storage_quota", "storage_quota"]
        assert not any(r.fatal for r in reports)

    def test_profile_round_trip(self, core):
        profile = Profile()
        profile.set(FieldType.CITY, "Paris")

        core.save_profile(profile)
        core.flush()
        core.cache.clear_all()

        assert core.load_profile().value_for(FieldType.CITY) == "Paris"

    def test_retrain(self, core):
        for i in range(10):
            core.record_correction({"name": f"f{i}", "label": "Handle"}, "unknown", "phone")

        assert core.retrain() == 1

    def test_storage_stats(self, core):
        stats = core.storage_stats()

        assert set(stats) >= {"sync", "local", "pending_writes", "flushes", "cache", "learning"}


class TestHandleMessage:
    """Tests for handle_message."""

    def test_classify(self, core):
        response = core.handle_message({"action": "classify", "element": {"name": "email_addr"}})

        assert response["success"] is True
        assert response["field"]["type"] == "email"
        assert response["field"]["confidence"] == "high"

    def test_classify_with_page_url(self, core):
        """Test that a page URL on the message selects the matching step."""
        core.load_site_rules(STEP_RULES)

        response = core.handle_message({
            "action": "classify",
            "url": "https://checkout.example.com/checkout/payment",
            "element": {"name": "pan", "hostname": "checkout.example.com", "sessionId": "tab-9"},
        })

        assert response["field"]["type"] == "card_number"
        assert response["field"]["method"] == "site_rule"

    def test_classify_many(self, core):
        response = core.handle_message({
            "action": "classify",
            "elements": [{"name": "email"}, {"name": "city", "position": 1}],
        })

        assert [f["type"] for f in response["fields"]] == ["email", "city"]

    def test_classify_missing_element(self, core):
        response = core.handle_message({"action": "classify"})

        assert response["success"] is False
        assert "element" in response["error"]

    def test_record_correction(self, core):
        element = {"name": "handle", "label": "Handle"}

        response = core.handle_message({
            "action": "recordCorrection",
            "element": element,
            "detectedType": "unknown",
            "correctedType": "firstName",
        })

        assert response["success"] is True
        assert core.classify(element).field_type is FieldType.FIRST_NAME

    def test_record_correction_snake_case(self, core):
        response = core.handle_message({
            "action": "recordCorrection",
            "element": {"name": "handle"},
            "corrected_type": "zip",
        })

        assert response["success"] is True

    def test_record_correction_unknown_type(self, core):
        response = core.handle_message({
            "action": "recordCorrection",
            "element": {"name": "handle"},
            "correctedType": "shoe_size",
        })

        assert response["success"] is False

    def test_get_cache_stats(self, core):
        core.classify({"name": "email"})

        response = core.handle_message({"action": "getCacheStats"})

        assert response["stats"]["field_cache"]["size"] == 1

    def test_load_and_reload_site_rules(self, core):
        response = core.handle_message({
            "action": "loadSiteRules",
            "rules": {"example.com": {}, "bad.example.com": {"selectors": {"nope": "#x"}}},
        })

        assert response["success"] is True
        assert response["loaded"] == ["example.com"]
        assert response["errors"][0]["pattern"] == "bad.example.com"

        reloaded = core.handle_message({"action": "reloadSiteRules"})
        assert reloaded["loaded"] == ["example.com"]

    def test_clear_cache(self, core):
        core.classify({"name": "email"})

        assert core.handle_message({"action": "clearCache"}) == {"success": True}
        assert core.get_cache_stats()["field_cache"]["size"] == 0

    def test_step_completed_and_navigate(self, core):
        core.load_site_rules(STEP_RULES)
        core.classify({"name": "line1", "hostname": "checkout.example.com", "session_id": "tab-1"})

        response = core.handle_message({"action": "stepCompleted", "sessionId": "tab-1"})
        assert response["step"]["step"] == "payment"

        response = core.handle_message({"action": "stepCompleted", "session_id": "tab-1"})
        assert response == {"success": True, "step": None}

        assert core.handle_message({"action": "navigate", "sessionId": "tab-1"})["success"] is True

    def test_step_completed_requires_session(self, core):
        response = core.handle_message({"action": "stepCompleted"})

        assert response == {"success": False, "error": "sessionId is required"}

    def test_storage_stats(self, core):
        response = core.handle_message({"action": "getStorageStats"})

        assert response["stats"]["learning"]["entries"] == 0

    def test_unknown_action(self, core):
        assert core.handle_message({"action": "teleport"}) == {
            "success": False,
            "error": "Unknown action: teleport",
        }

    def test_not_a_dict(self, core):
        assert core.handle_message("classify")["success"] is False

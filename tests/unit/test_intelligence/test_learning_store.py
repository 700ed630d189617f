"""Unit tests for LearningStore."""

import json

import pytest

from fieldfill.config import CoreConfig
from fieldfill.errors import ErrorReporter
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.intelligence.learning_store import LEARNING_KEY, LearningStore
from fieldfill.models import DetectedField, DetectionMethod, FieldType
from fieldfill.scheduling import ManualClock, TaskQueue
from fieldfill.storage import MemoryBackend, StorageAdapter, decode_value, encode_value, item_size


def signals(label="", parent_text="", placeholder=""):
    return {
        "attributes": {"placeholder": placeholder} if placeholder else {},
        "label": label,
        "parent_text": parent_text,
        "section_text": "",
        "position": 0,
    }


class TestLearningStore:
    """Tests for recording, persisting and mining corrections."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def backend(self):
        return MemoryBackend()

    @pytest.fixture
    def reporter(self):
        return ErrorReporter()

    def make_store(self, backend, clock, reporter, config=None):
        config = config or CoreConfig()
        cache = CacheManager(config, clock)
        storage = StorageAdapter(backend, cache, TaskQueue(clock), reporter, config)
        store = LearningStore(storage, cache, config)
        store.load()
        return store

    @pytest.fixture
    def store(self, backend, clock, reporter):
        return self.make_store(backend, clock, reporter)

    def test_empty(self, store):
        assert len(store) == 0
        assert store.lookup("sig") is None

    def test_record_and_lookup(self, store):
        store.record_correction(FieldType.FIRST_NAME, FieldType.LAST_NAME, signals("Surname"), "sig1")

        assert store.lookup("sig1") is FieldType.LAST_NAME
        assert store.entry_for("sig1").detected_type is FieldType.FIRST_NAME

    def test_accepts_string_types(self, store):
        entry = store.record_correction("email", "phone", {}, "sig1")

        assert entry.corrected_type is FieldType.PHONE

    def test_most_recent_correction_wins(self, store):
        """Test that the latest entry for a signature is the effective one."""
        store.record_correction(FieldType.UNKNOWN, FieldType.EMAIL, {}, "sig1")
        store.record_correction(FieldType.EMAIL, FieldType.PHONE, {}, "sig1")

        assert store.lookup("sig1") is FieldType.PHONE
        assert len(store) == 2

    def test_record_invalidates_cached_detections(self, store):
        """Test that cached results sharing the signature are dropped."""
        detected = DetectedField(
            field_type=FieldType.EMAIL,
            score=0.9,
            method=DetectionMethod.PATTERN,
            fingerprint="fp1",
            signature="sig1",
        )
        store.cache.field_cache.put("fp1", detected)
        store.cache.field_cache.put("fp2", DetectedField(
            field_type=FieldType.PHONE,
            score=0.9,
            method=DetectionMethod.PATTERN,
            fingerprint="fp2",
            signature="other",
        ))

        store.record_correction(FieldType.EMAIL, FieldType.PHONE, {}, "sig1")

        assert store.cache.field_cache.get("fp1") is None
        assert store.cache.field_cache.get("fp2") is not None

    def test_cap_drops_oldest(self, backend, clock, reporter):
        """Test that the log keeps only the newest max_learning_entries."""
        store = self.make_store(backend, clock, reporter, CoreConfig(max_learning_entries=3))
        for i in range(5):
            store.record_correction(FieldType.UNKNOWN, FieldType.EMAIL, {}, f"sig{i}")

        assert len(store) == 3
        assert [e.signature for e in store.entries] == ["sig2", "sig3", "sig4"]
        assert store.lookup("sig0") is None
        assert store.lookup("sig4") is FieldType.EMAIL

    def test_persisted_and_reloaded(self, store, backend, clock, reporter):
        """Test that corrections survive a new store on the same backend."""
        store.record_correction(FieldType.UNKNOWN, FieldType.ZIP, signals("Postleitzahl"), "sig1")
        store.storage.flush()

        reloaded = self.make_store(backend, clock, reporter)

        assert len(reloaded) == 1
        assert reloaded.lookup("sig1") is FieldType.ZIP
        assert reloaded.entries[0].signals["label"] == "Postleitzahl"

    def test_persisted_records_carry_schema_version(self, store, backend):
        store.record_correction(FieldType.UNKNOWN, FieldType.ZIP, {}, "sig1")
        store.storage.flush()

        records = decode_value(backend.items("local")[LEARNING_KEY])

        assert records[0]["schema_version"] == 2
        assert records[0]["corrected_type"] == "zip"

    def test_load_migrates_legacy_records(self, backend, clock, reporter):
        """Test that camelCase records from the first schema are upgraded."""
        legacy = [
            {"signature": "old", "detectedType": "firstName", "correctedType": "lastName", "timestamp": 5},
        ]
        backend.set_many("local", {LEARNING_KEY: json.dumps(legacy)})

        store = self.make_store(backend, clock, reporter)

        assert store.lookup("old") is FieldType.LAST_NAME
        assert store.entries[0].detected_type is FieldType.FIRST_NAME

    def test_load_skips_unreadable_records(self, backend, clock, reporter):
        records = [
            {"signature": "good", "detected_type": "email", "corrected_type": "phone",
             "timestamp": 1, "schema_version": 2},
            {"detected_type": "email", "schema_version": 2},
            {"signature": "bad-type", "detected_type": "email", "corrected_type": "nonsense",
             "schema_version": 2},
        ]
        backend.set_many("local", {LEARNING_KEY: encode_value(records)})

        store = self.make_store(backend, clock, reporter)

        assert len(store) == 1
        assert store.lookup("good") is FieldType.PHONE

    def test_load_orders_by_timestamp_and_caps(self, backend, clock, reporter):
        records = [
            {"signature": "s", "detected_type": "email", "corrected_type": t,
             "timestamp": ts, "schema_version": 2}
            for t, ts in (("zip", 30), ("city", 10), ("phone", 20))
        ]
        backend.set_many("local", {LEARNING_KEY: encode_value(records)})

        store = self.make_store(backend, clock, reporter, CoreConfig(max_learning_entries=2))

        assert [e.corrected_type for e in store.entries] == [FieldType.PHONE, FieldType.ZIP]
        assert store.lookup("s") is FieldType.ZIP

    def test_quota_trims_oldest_corrections(self, store, backend, reporter):
        """Test that a log over its storage quota drops its oldest share and is written."""
        for i in range(10):
            store.record_correction(FieldType.UNKNOWN, FieldType.EMAIL, {}, f"sig{i}")
        full = [{**e.to_dict(), "schema_version": 2} for e in store.entries]
        store.config.compression_threshold = 10 ** 9
        store.config.local_quota_bytes = item_size(LEARNING_KEY, encode_value(full, 10 ** 9)) - 1

        store.storage.flush()

        assert len(store) == 8
        assert store.lookup("sig0") is None
        persisted = decode_value(backend.items("local")[LEARNING_KEY])
        assert [r["signature"] for r in persisted] == [f"sig{i}" for i in range(2, 10)]
        assert reporter.by_kind("storage_quota") == []

    def test_suggest_patterns(self, store):
        """Test that words shared by a group of corrections are suggested."""
        for i in range(3):
            store.record_correction(
                FieldType.UNKNOWN, FieldType.PHONE, signals(label="Mobile contact", parent_text=f"row {i}"), f"s{i}"
            )

        suggestions = store.suggest_patterns()

        words = {s.word for s in suggestions}
        assert words == {"contact", "mobile", "row"}
        assert all(s.corrected_type is FieldType.PHONE for s in suggestions)
        assert all(s.support == 3 for s in suggestions)

    def test_suggest_patterns_needs_support(self, store):
        for i in range(2):
            store.record_correction(FieldType.UNKNOWN, FieldType.PHONE, signals(label="Mobile"), f"s{i}")

        assert store.suggest_patterns() == []
        assert store.suggest_patterns(min_support=2)[0].word == "mobile"

    def test_suggest_patterns_requires_common_share(self, store):
        """Test that words in less than 60% of a group are not suggested."""
        labels = ["Mobile", "Mobile", "Mobile", "Handy", "Handy"]
        for i, label in enumerate(labels):
            store.record_correction(FieldType.UNKNOWN, FieldType.PHONE, signals(label=label), f"s{i}")

        assert [s.word for s in store.suggest_patterns()] == ["mobile"]

    def test_suggest_patterns_uses_placeholder(self, store):
        for i in range(3):
            store.record_correction(FieldType.UNKNOWN, FieldType.ZIP, signals(placeholder="PLZ code"), f"s{i}")

        assert {s.word for s in store.suggest_patterns()} == {"code", "plz"}

    def test_suggest_patterns_ignores_unknown_target(self, store):
        for i in range(3):
            store.record_correction(FieldType.EMAIL, FieldType.UNKNOWN, signals(label="Newsletter"), f"s{i}")

        assert store.suggest_patterns() == []

    def test_stats(self, store):
        store.record_correction(FieldType.UNKNOWN, FieldType.EMAIL, {}, "a")
        store.record_correction(FieldType.UNKNOWN, FieldType.EMAIL, {}, "a")

        assert store.stats() == {"entries": 2, "signatures": 1, "max_entries": 1000}

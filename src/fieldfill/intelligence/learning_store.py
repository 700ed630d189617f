"""
Learning store.

Append-only log of user corrections. The effective correction for a
signature is its most recent entry. Once the log grows past its cap the
oldest entries (by creation) are dropped first.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Any
import logging
import math
import re
import time

from fieldfill.config import CoreConfig
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.models import FieldType, LearningData
from fieldfill.profile import SCHEMA_VERSION, migrate_record
from fieldfill.storage import StorageAdapter

logger = logging.getLogger(__name__)

LEARNING_KEY = "learning_data"

_WORD = re.compile(r"\b[a-z][a-z0-9]{2,}\b")

# Share of a correction group that must contain a word for it to be suggested
COMMON_WORD_SHARE = 0.6


@dataclass
class PatternSuggestion:
    """A word common to several corrections of the same kind."""
    detected_type: FieldType
    corrected_type: FieldType
    word: str
    support: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected_type": self.detected_type.value,
            "corrected_type": self.corrected_type.value,
            "word": self.word,
            "support": self.support,
        }


def _signal_words(signals: dict[str, Any]) -> set[str]:
    attributes = signals.get("attributes") or {}
    text = " ".join(
        str(part) for part in (
            signals.get("label", ""),
            signals.get("parent_text", ""),
            attributes.get("placeholder", ""),
        ) if part
    ).lower()
    return set(_WORD.findall(text))


class LearningStore:
    """Persists user corrections and answers lookups by signature."""

    def __init__(
        self,
        storage: StorageAdapter,
        cache: CacheManager,
        config: CoreConfig | None = None,
        storage_type: str = "local",
    ):
        self.storage = storage
        self.cache = cache
        self.config = config or CoreConfig()
        self.storage_type = storage_type
        self._entries: list[LearningData] = []
        self._latest: dict[str, LearningData] = {}
        self.storage.register_trimmer(LEARNING_KEY, self._trim_for_quota)

    def load(self) -> int:
        """Restore persisted corrections. Returns the number loaded."""
        records = self.storage.read(LEARNING_KEY, self.storage_type) or []
        entries = []
        for record in records:
            try:
                entries.append(LearningData.from_dict(migrate_record(record)))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable learning record: {e}")
        entries.sort(key=lambda e: e.timestamp)
        self._entries = entries[-self.config.max_learning_entries:]
        self._reindex()
        logger.info(f"Loaded {len(self._entries)} learned corrections")
        return len(self._entries)

    def record_correction(
        self,
        detected_type: FieldType,
        corrected_type: FieldType,
        signals: dict[str, Any],
        signature: str,
    ) -> LearningData:
        """
        Append a correction, persist the log and invalidate cached
        detections of every element with the same signature.
        """
        entry = LearningData(
            signature=signature,
            detected_type=FieldType.parse(detected_type),
            corrected_type=FieldType.parse(corrected_type),
            signals=dict(signals or {}),
            timestamp=time.time() * 1000,
        )
        self._entries.append(entry)
        self._latest[signature] = entry

        overflow = len(self._entries) - self.config.max_learning_entries
        if overflow > 0:
            del self._entries[:overflow]
            self._reindex()

        self.cache.invalidate_signature(signature)
        self._persist()
        logger.info(
            f"Learned correction: {entry.detected_type.value} -> {entry.corrected_type.value} "
            f"for signature {signature}"
        )
        return entry

    def lookup(self, signature: str) -> FieldType | None:
        """Corrected type of the most recent correction for a signature."""
        entry = self._latest.get(signature)
        return entry.corrected_type if entry is not None else None

    def entry_for(self, signature: str) -> LearningData | None:
        return self._latest.get(signature)

    @property
    def entries(self) -> list[LearningData]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def suggest_patterns(self, min_support: int | None = None) -> list[PatternSuggestion]:
        """
        Mine words shared by corrections of the same detected -> corrected pair.

        Only pairs with at least min_support corrections are considered; a
        word is suggested when it appears in 60% of that pair's corrections.
        """
        min_support = min_support if min_support is not None else self.config.retrain_min_support
        groups: dict[tuple[FieldType, FieldType], list[LearningData]] = {}
        for entry in self._entries:
            groups.setdefault((entry.detected_type, entry.corrected_type), []).append(entry)

        suggestions = []
        for (detected, corrected), entries in groups.items():
            if len(entries) < min_support or corrected is FieldType.UNKNOWN:
                continue
            counts = Counter()
            for entry in entries:
                counts.update(_signal_words(entry.signals))
            threshold = max(min_support, math.ceil(len(entries) * COMMON_WORD_SHARE))
            for word, count in sorted(counts.items()):
                if count >= threshold:
                    suggestions.append(PatternSuggestion(detected, corrected, word, count))
        return suggestions

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "signatures": len(self._latest),
            "max_entries": self.config.max_learning_entries,
        }

    def _reindex(self) -> None:
        self._latest = {}
        for entry in self._entries:
            self._latest[entry.signature] = entry

    def _serialize(self) -> list[dict[str, Any]]:
        return [{**e.to_dict(), "schema_version": SCHEMA_VERSION} for e in self._entries]

    def _persist(self) -> None:
        self.storage.write(LEARNING_KEY, self._serialize(), self.storage_type)

    def _trim_for_quota(self, _value: Any) -> list[dict[str, Any]]:
        """Drop the oldest share of corrections so the log fits its quota."""
        drop = max(1, int(len(self._entries) * self.config.quota_trim_fraction))
        del self._entries[:drop]
        self._reindex()
        logger.warning(f"Dropped {drop} oldest corrections to fit storage quota")
        return self._serialize()

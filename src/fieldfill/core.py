"""
AutofillCore: wires the caches, rules, detector, learning store and storage
together and exposes them through a small message contract.

Hosts (a content script bridge, the CLI, tests) either call the methods
directly or send dict messages to handle_message(), which never raises.
"""

from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import logging

from fieldfill.config import CoreConfig
from fieldfill.detector import FieldDetector
from fieldfill.errors import ErrorReport, ErrorReporter
from fieldfill.filler import FillPlan, plan_fill
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.intelligence.learning_store import LearningStore
from fieldfill.intelligence.site_rules import (
    DEFAULT_SITE_RULES,
    RuleLoadResult,
    SiteRulesEngine,
    StepInfo,
)
from fieldfill.models import DetectedField, FieldType, LearningData
from fieldfill.observer import MutationBatcher
from fieldfill.profile import Profile, ProfileStore
from fieldfill.scheduling import Clock, SystemClock, TaskQueue
from fieldfill.snapshot import ElementSnapshot
from fieldfill.storage import MemoryBackend, StorageAdapter, StorageBackend

logger = logging.getLogger(__name__)

ElementLike = Union[ElementSnapshot, Dict[str, Any]]


def _as_snapshot(element: ElementLike) -> ElementSnapshot:
    if isinstance(element, ElementSnapshot):
        return element
    if isinstance(element, dict):
        return ElementSnapshot.from_dict(element)
    raise TypeError(f"Expected an element snapshot or dict, got {type(element).__name__}")


def _with_marker(element: ElementLike, marker: Optional[str]) -> ElementSnapshot:
    """Apply a message-level page URL to an element that carries none."""
    snapshot = _as_snapshot(element)
    if marker and not snapshot.step_marker:
        return replace(snapshot, step_marker=marker)
    return snapshot


class AutofillCore:
    """The classification and caching core behind the message contract."""

    def __init__(
        self,
        config: Optional[CoreConfig] = None,
        backend: Optional[StorageBackend] = None,
        clock: Optional[Clock] = None,
        on_report: Optional[Callable[[ErrorReport], None]] = None,
        on_results: Optional[Callable[[List[DetectedField]], None]] = None,
        load_default_rules: bool = False,
    ):
        """
        Initialize the core.

        Args:
            config: Tunables (defaults to CoreConfig())
            backend: Persistence backend (defaults to an in-memory one)
            clock: Time source shared by caches and timers
            on_report: Host callback for error reports
            on_results: Host callback for debounced detection passes
            load_default_rules: Load the bundled site rules
        """
        self.config = config or CoreConfig()
        self.clock = clock or SystemClock()
        self.task_queue = TaskQueue(self.clock)
        self.reporter = ErrorReporter(on_report=on_report)
        self.cache = CacheManager(self.config, self.clock)
        self.storage = StorageAdapter(
            backend or MemoryBackend(), self.cache, self.task_queue, self.reporter, self.config
        )
        self.site_rules = SiteRulesEngine(self.cache, self.task_queue, self.reporter, self.config)
        self.learning = LearningStore(self.storage, self.cache, self.config)
        self.detector = FieldDetector(
            self.cache, self.site_rules, self.learning, self.reporter, self.config
        )
        self.observer = MutationBatcher(
            self.detector, self.task_queue, on_results, self.reporter, self.config
        )
        self.profiles = ProfileStore(self.storage)

        self.learning.load()
        if load_default_rules:
            self.site_rules.load_site_rules(DEFAULT_SITE_RULES, source="defaults")

    # ---------------------------------------------------------------------
    # Classification
    # ---------------------------------------------------------------------

    def classify(self, element: ElementLike) -> Optional[DetectedField]:
        return self.detector.classify(_as_snapshot(element))

    def classify_many(self, elements: Iterable[ElementLike]) -> List[DetectedField]:
        results = []
        for element in elements:
            detected = self.classify(element)
            if detected is not None:
                results.append(detected)
        return results

    def explain(self, element: ElementLike) -> Dict[str, Any]:
        return self.detector.explain(_as_snapshot(element))

    def record_correction(
        self,
        element: ElementLike,
        detected_type: Union[FieldType, str],
        corrected_type: Union[FieldType, str],
    ) -> LearningData:
        """The user changed a filled value: learn the corrected type for this kind of element."""
        snapshot = _as_snapshot(element)
        return self.learning.record_correction(
            FieldType.parse(detected_type),
            FieldType.parse(corrected_type),
            snapshot.signals(),
            snapshot.signature,
        )

    def retrain(self) -> int:
        return self.detector.retrain()

    def get_cache_stats(self) -> Dict[str, Dict[str, int]]:
        return self.cache.get_cache_stats()

    def clear_cache(self) -> None:
        self.cache.clear_all()

    # ---------------------------------------------------------------------
    # Site rules and steps
    # ---------------------------------------------------------------------

    def load_site_rules(self, ruleset: Dict[str, Any]) -> RuleLoadResult:
        return self.site_rules.load_site_rules(ruleset)

    def load_site_rules_file(self, path: Union[str, Path]) -> RuleLoadResult:
        return self.site_rules.load_site_rules_file(path)

    def reload_site_rules(self) -> RuleLoadResult:
        return self.site_rules.reload_site_rules()

    def step_completed(self, session_id: str) -> Optional[StepInfo]:
        return self.site_rules.complete_step(session_id)

    def navigate(self, session_id: str) -> None:
        self.site_rules.navigate(session_id)

    # ---------------------------------------------------------------------
    # Mutation path
    # ---------------------------------------------------------------------

    def notify_mutations(self, elements: Iterable[ElementLike]) -> None:
        self.observer.notify(_as_snapshot(e) for e in elements)

    def elements_removed(self, elements: Iterable[ElementLike]) -> None:
        self.observer.removed(_as_snapshot(e) for e in elements)

    def run_due(self) -> int:
        """Run due timers (detection passes, storage flushes, stall checks)."""
        return self.task_queue.run_due()

    # ---------------------------------------------------------------------
    # Profile and filling
    # ---------------------------------------------------------------------

    def load_profile(self) -> Profile:
        return self.profiles.load()

    def save_profile(self, profile: Profile) -> None:
        self.profiles.save(profile)

    def plan_fill(
        self,
        fields: List[DetectedField],
        hostname: Optional[str] = None,
        section: Optional[str] = None,
        allow_sensitive: bool = False,
    ) -> FillPlan:
        rule = self.site_rules.match(hostname) if hostname else None
        return plan_fill(fields, self.load_profile(), rule, section, allow_sensitive)

    # ---------------------------------------------------------------------
    # Storage
    # ---------------------------------------------------------------------

    def storage_stats(self) -> Dict[str, Any]:
        stats = self.storage.storage_stats()
        stats["learning"] = self.learning.stats()
        return stats

    def flush(self) -> int:
        return self.storage.flush()

    def close(self) -> None:
        self.storage.close()

    # ---------------------------------------------------------------------
    # Message contract
    # ---------------------------------------------------------------------

    def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch one host message.

        Always returns {"success": bool, ...}; failures carry an "error"
        string instead of raising.
        """
        action = message.get("action") if isinstance(message, dict) else None
        handler = self._handlers().get(action)
        if handler is None:
            return {"success": False, "error": f"Unknown action: {action}"}
        try:
            response = handler(message)
        except Exception as e:
            logger.error(f"Message '{action}' failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True, **response}

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]]:
        return {
            "classify": self._on_classify,
            "recordCorrection": self._on_record_correction,
            "getCacheStats": lambda _m: {"stats": self.get_cache_stats()},
            "loadSiteRules": lambda m: self.load_site_rules(m.get("rules") or {}).to_dict(),
            "reloadSiteRules": lambda _m: self.reload_site_rules().to_dict(),
            "clearCache": self._on_clear_cache,
            "stepCompleted": self._on_step_completed,
            "navigate": self._on_navigate,
            "getStorageStats": lambda _m: {"stats": self.storage_stats()},
        }

    def _on_classify(self, message: Dict[str, Any]) -> Dict[str, Any]:
        marker = message.get("stepMarker") or message.get("url")
        if "elements" in message:
            elements = [_with_marker(e, marker) for e in message["elements"]]
            return {"fields": [d.to_dict() for d in self.classify_many(elements)]}
        detected = self.classify(_with_marker(message["element"], marker))
        return {"field": detected.to_dict() if detected is not None else None}

    def _on_record_correction(self, message: Dict[str, Any]) -> Dict[str, Any]:
        entry = self.record_correction(
            message["element"],
            message.get("detectedType") or message.get("detected_type") or FieldType.UNKNOWN,
            message.get("correctedType") or message["corrected_type"],
        )
        return {"signature": entry.signature}

    def _on_clear_cache(self, _message: Dict[str, Any]) -> Dict[str, Any]:
        self.clear_cache()
        return {}

    @staticmethod
    def _session_id(message: Dict[str, Any]) -> str:
        session_id = message.get("sessionId") or message.get("session_id")
        if not session_id:
            raise ValueError("sessionId is required")
        return session_id

    def _on_step_completed(self, message: Dict[str, Any]) -> Dict[str, Any]:
        step = self.step_completed(self._session_id(message))
        return {"step": step.to_dict() if step is not None else None}

    def _on_navigate(self, message: Dict[str, Any]) -> Dict[str, Any]:
        self.navigate(self._session_id(message))
        return {}

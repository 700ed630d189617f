"""
Debounced mutation handling.

The host reports changed elements as they appear; MutationBatcher
coalesces each burst into a single detection pass over the union of
changed elements. The pass runs debounce_ms after the last mutation of the
burst, but never later than max_debounce_wait_ms after its first one.
"""

from typing import Callable, Dict, Iterable, List, Optional
import logging

from fieldfill.config import CoreConfig
from fieldfill.detector import FieldDetector
from fieldfill.errors import ErrorReporter, FieldFillError
from fieldfill.models import DetectedField
from fieldfill.scheduling import TaskQueue, TimerHandle
from fieldfill.snapshot import ElementSnapshot

logger = logging.getLogger(__name__)


class MutationBatcher:
    """Coalesces mutation bursts into detection passes on the task queue."""

    def __init__(
        self,
        detector: FieldDetector,
        task_queue: TaskQueue,
        on_results: Optional[Callable[[List[DetectedField]], None]] = None,
        reporter: Optional[ErrorReporter] = None,
        config: Optional[CoreConfig] = None,
    ):
        self.detector = detector
        self.task_queue = task_queue
        self.on_results = on_results
        self.reporter = reporter or ErrorReporter()
        self.config = config or CoreConfig()
        self._pending: Dict[str, ElementSnapshot] = {}
        self._timer: Optional[TimerHandle] = None
        self._burst_started: Optional[float] = None
        self.passes = 0

    def notify(self, snapshots: Iterable[ElementSnapshot]) -> None:
        """Record changed elements and (re)arm the coalescing timer."""
        added = False
        for snapshot in snapshots:
            self._pending[snapshot.fingerprint] = snapshot
            added = True
        if not added:
            return

        now = self.task_queue.clock.now_ms()
        if self._burst_started is None:
            self._burst_started = now

        deadline = self._burst_started + self.config.max_debounce_wait_ms
        delay = min(self.config.debounce_ms, max(0.0, deadline - now))

        self.task_queue.cancel(self._timer)
        self._timer = self.task_queue.call_later(delay, self._run_pass, label="detection-pass")

    def removed(self, snapshots: Iterable[ElementSnapshot]) -> None:
        """Elements left the document: drop them and their cached results."""
        for snapshot in snapshots:
            self._pending.pop(snapshot.fingerprint, None)
            self.detector.forget(snapshot)

    def pending_count(self) -> int:
        return len(self._pending)

    def flush(self) -> List[DetectedField]:
        """Run the pending pass now."""
        return self._run_pass()

    def _run_pass(self) -> List[DetectedField]:
        self.task_queue.cancel(self._timer)
        self._timer = None
        self._burst_started = None
        batch, self._pending = self._pending, {}
        if not batch:
            return []

        results = []
        for snapshot in batch.values():
            try:
                detected = self.detector.classify(snapshot)
            except FieldFillError as e:
                e.fingerprint = e.fingerprint or snapshot.fingerprint
                self.reporter.report(e)
                continue
            except Exception as e:
                logger.exception(f"Classification of {snapshot.fingerprint} failed")
                self.reporter.report(FieldFillError(
                    f"Unexpected error during classification: {e}",
                    stage="classify",
                    fingerprint=snapshot.fingerprint,
                    hostname=snapshot.hostname,
                ))
                continue
            if detected is not None:
                results.append(detected)

        self.passes += 1
        logger.debug(f"Detection pass {self.passes}: {len(batch)} elements, {len(results)} results")

        if self.on_results is not None:
            try:
                self.on_results(results)
            except Exception as e:
                logger.error(f"Detection results callback failed: {e}")
        return results

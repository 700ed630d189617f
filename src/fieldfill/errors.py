"""
Error kinds and reporting.

None of these errors is allowed to escape the mutation-handling path: the
component that detects one recovers where it can and hands an ErrorReport
to the ErrorReporter, which logs it and forwards it to the host.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque

logger = logging.getLogger(__name__)


class FieldFillError(Exception):
    """Base class for all fieldfill errors."""

    kind = "error"
    fatal = False

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        fingerprint: str | None = None,
        hostname: str | None = None,
    ):
        self.message = message
        self.stage = stage
        self.fingerprint = fingerprint
        self.hostname = hostname
        super().__init__(message)


class SignalEvaluationError(FieldFillError):
    """A single signal (pattern, selector) is malformed or raised."""

    kind = "signal_evaluation"

    def __init__(self, message: str, signal: str | None = None, **kwargs):
        self.signal = signal
        super().__init__(message, **kwargs)


class StorageQuotaError(FieldFillError):
    """A write exceeds the quota of its storage area or the backend rejected it."""

    kind = "storage_quota"

    def __init__(
        self,
        message: str,
        storage_type: str = "local",
        key: str | None = None,
        required_bytes: int = 0,
        quota_bytes: int = 0,
        **kwargs,
    ):
        self.storage_type = storage_type
        self.key = key
        self.required_bytes = required_bytes
        self.quota_bytes = quota_bytes
        super().__init__(message, **kwargs)


class RuleLoadError(FieldFillError):
    """Site rule data could not be parsed; the rule is discarded."""

    kind = "rule_load"

    def __init__(self, message: str, pattern: str | None = None, **kwargs):
        self.pattern = pattern
        super().__init__(message, **kwargs)


class StepStallError(FieldFillError):
    """A multi-step form did not advance within its wait window."""

    kind = "step_stall"
    fatal = True

    def __init__(self, message: str, session_id: str | None = None, step: str | None = None, **kwargs):
        self.session_id = session_id
        self.step = step
        super().__init__(message, **kwargs)


@dataclass
class ErrorReport:
    """A reported error with enough context to reproduce it."""
    kind: str
    message: str
    stage: str | None = None
    fingerprint: str | None = None
    hostname: str | None = None
    fatal: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_error(cls, error: FieldFillError) -> "ErrorReport":
        return cls(
            kind=error.kind,
            message=error.message,
            stage=error.stage,
            fingerprint=error.fingerprint,
            hostname=error.hostname,
            fatal=error.fatal,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "fingerprint": self.fingerprint,
            "hostname": self.hostname,
            "fatal": self.fatal,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorReporter:
    """
    Collects error reports and forwards them to the host.

    Keeps a bounded history so developer tooling can inspect recent
    problems without the reporter growing unbounded.
    """

    def __init__(
        self,
        on_report: Callable[[ErrorReport], None] | None = None,
        history_size: int = 100,
    ):
        self.on_report = on_report
        self._history: Deque[ErrorReport] = deque(maxlen=history_size)

    def report(self, error: FieldFillError | ErrorReport) -> ErrorReport:
        """Record an error. Returns the stored report."""
        report = error if isinstance(error, ErrorReport) else ErrorReport.from_error(error)
        self._history.append(report)

        context = report.fingerprint or report.hostname or "-"
        if report.fatal:
            logger.error(f"[{report.kind}] {report.message} (stage={report.stage}, context={context})")
        else:
            logger.warning(f"[{report.kind}] {report.message} (stage={report.stage}, context={context})")

        if self.on_report is not None:
            try:
                self.on_report(report)
            except Exception as e:
                # The host callback must not break the mutation path
                logger.error(f"Error report callback failed: {e}")

        return report

    @property
    def history(self) -> list[ErrorReport]:
        return list(self._history)

    def by_kind(self, kind: str) -> list[ErrorReport]:
        return [r for r in self._history if r.kind == kind]

    def clear(self) -> None:
        self._history.clear()

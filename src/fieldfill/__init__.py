"""Adaptive form field classification and caching core."""

__version__ = "0.1.0"

from fieldfill.models import (
    FieldType,
    Confidence,
    DetectionMethod,
    DetectionContext,
    DetectedField,
    LearningData,
    confidence_for_score,
)
from fieldfill.snapshot import ElementSnapshot, snapshot_document, snapshots_from_html
from fieldfill.detector import FieldDetector
from fieldfill.core import AutofillCore
from fieldfill.profile import Profile
from fieldfill.storage import StorageAdapter, MemoryBackend, SqliteBackend, get_backend
from fieldfill.scheduling import ManualClock, SystemClock, TaskQueue
from fieldfill.errors import (
    FieldFillError,
    SignalEvaluationError,
    StorageQuotaError,
    RuleLoadError,
    StepStallError,
    ErrorReport,
    ErrorReporter,
)
from fieldfill.config import CoreConfig, settings

__all__ = [
    "FieldType",
    "Confidence",
    "DetectionMethod",
    "DetectionContext",
    "DetectedField",
    "LearningData",
    "confidence_for_score",
    "ElementSnapshot",
    "snapshot_document",
    "snapshots_from_html",
    "FieldDetector",
    "AutofillCore",
    "Profile",
    "StorageAdapter",
    "MemoryBackend",
    "SqliteBackend",
    "get_backend",
    "ManualClock",
    "SystemClock",
    "TaskQueue",
    "FieldFillError",
    "SignalEvaluationError",
    "StorageQuotaError",
    "RuleLoadError",
    "StepStallError",
    "ErrorReport",
    "ErrorReporter",
    "CoreConfig",
    "settings",
]

"""
Site Intelligence Package.

Provides the learned and authored knowledge the detector consults:
- Bounded caches for detections, storage reads and rule matches
- Site rules with multi-step form sessions
- The learning store of user corrections
"""

from .field_cache import BoundedCache, CacheEntry, CacheManager, CacheStats
from .site_rules import (
    SiteRulesEngine,
    SiteRule,
    SiteRuleMetadata,
    FormStep,
    StepInfo,
    StepSession,
    StepState,
    RuleLoadResult,
    DEFAULT_SITE_RULES,
    build_rule,
    normalize_hostname,
)
from .learning_store import LearningStore, PatternSuggestion

__all__ = [
    # Caches
    "BoundedCache",
    "CacheEntry",
    "CacheManager",
    "CacheStats",
    # Site rules
    "SiteRulesEngine",
    "SiteRule",
    "SiteRuleMetadata",
    "FormStep",
    "StepInfo",
    "StepSession",
    "StepState",
    "RuleLoadResult",
    "DEFAULT_SITE_RULES",
    "build_rule",
    "normalize_hostname",
    # Learning
    "LearningStore",
    "PatternSuggestion",
]

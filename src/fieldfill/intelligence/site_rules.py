"""
Site rules engine.

Per-site override rules keyed by hostname (exact or glob pattern). A rule
maps FieldTypes to CSS selectors, lists selectors that must never be
filled, carries per-type fill delays and may describe a multi-step form
flow (checkout address -> payment, ...).

Rules arrive as data (a dict or a YAML file), are validated with pydantic
and are read-only once loaded. Step progress is tracked in explicit
StepSession objects keyed by a page-session id; a session only advances on
complete_step() and is reset by navigate().
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping
import copy
import logging

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from fieldfill.config import CoreConfig
from fieldfill.errors import ErrorReporter, RuleLoadError, StepStallError
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.models import FieldType
from fieldfill.scheduling import TaskQueue, TimerHandle

logger = logging.getLogger(__name__)

WILDCARD_CHARS = "*?["


# =========================================================================
# Rule data validation
# =========================================================================

def _parse_type_mapping(value: Any) -> dict[FieldType, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError("expected a mapping of field type to value")
    parsed = {}
    for key, item in value.items():
        try:
            parsed[FieldType.parse(key)] = item
        except ValueError:
            raise ValueError(f"unknown field type {key!r}")
    return parsed


class FormStepData(BaseModel):
    """Validated data for one step of a multi-step form."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, description="Step name, also usable as a marker")
    url_pattern: str | None = Field(
        default=None,
        validation_alias=AliasChoices("url_pattern", "urlPattern"),
        description="URL fragment identifying the page of this step",
    )
    selectors: dict[FieldType, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("selectors", "fields"),
    )
    next_button: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_button", "nextButton"),
    )
    wait_for_load_ms: int | None = Field(
        default=None,
        ge=0,
        le=120000,
        validation_alias=AliasChoices("wait_for_load_ms", "waitForLoad"),
    )
    skip: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("skip", "skipFields", "skip_fields"),
    )

    @field_validator("selectors", mode="before")
    @classmethod
    def parse_selectors(cls, value: Any) -> dict[FieldType, Any]:
        return _parse_type_mapping(value)


class SiteRuleData(BaseModel):
    """Validated data for one site rule."""

    model_config = ConfigDict(extra="ignore")

    selectors: dict[FieldType, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("selectors", "fields"),
    )
    delays: dict[FieldType, int] = Field(default_factory=dict)
    default_delay_ms: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("default_delay_ms", "betweenFields"),
    )
    exclusions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("exclusions", "skipFields", "skip_fields"),
    )
    restricted_types: list[FieldType] = Field(
        default_factory=list,
        validation_alias=AliasChoices("restricted_types", "restrictedFields"),
    )
    custom_handlers: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("custom_handlers", "customHandlers"),
    )
    steps: list[FormStepData] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("selectors", "delays", mode="before")
    @classmethod
    def parse_type_keys(cls, value: Any) -> dict[FieldType, Any]:
        return _parse_type_mapping(value)

    @field_validator("restricted_types", mode="before")
    @classmethod
    def parse_restricted(cls, value: Any) -> list[FieldType]:
        # Kinds outside FieldType (ssn, routing numbers) are ignored
        parsed = []
        for item in value or []:
            try:
                parsed.append(FieldType.parse(item))
            except ValueError:
                logger.debug(f"Ignoring unknown restricted type {item!r}")
        return parsed

    @field_validator("delays")
    @classmethod
    def non_negative_delays(cls, value: dict[FieldType, int]) -> dict[FieldType, int]:
        for field_type, delay in value.items():
            if delay < 0:
                raise ValueError(f"negative delay for {field_type.value}")
        return value


# =========================================================================
# Loaded (read-only) rule objects
# =========================================================================

@dataclass(frozen=True)
class FormStep:
    """One stage of a multi-page form flow."""
    name: str
    selectors: Mapping[FieldType, str]
    url_pattern: str | None = None
    next_button: str | None = None
    wait_for_load_ms: int = 1000
    skip: tuple[str, ...] = ()

    def matches_marker(self, marker: str) -> bool:
        marker = marker.lower()
        if marker == self.name.lower():
            return True
        return bool(self.url_pattern) and self.url_pattern.lower() in marker


@dataclass(frozen=True)
class SiteRuleMetadata:
    """Descriptive data carried with a rule."""
    name: str = ""
    version: str = ""
    source: str = "inline"
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    loaded_at: datetime = field(default_factory=datetime.now, compare=False)


@dataclass(frozen=True)
class SiteRule:
    """A read-only override rule for one hostname or hostname pattern."""
    hostname: str
    selectors: Mapping[FieldType, str]
    delays: Mapping[FieldType, int]
    exclusions: frozenset[str]
    restricted_types: frozenset[FieldType] = frozenset()
    custom_handlers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    steps: tuple[FormStep, ...] = ()
    default_delay_ms: int = 0
    metadata: SiteRuleMetadata = field(default_factory=SiteRuleMetadata)
    order: int = 0

    @property
    def is_pattern(self) -> bool:
        return any(c in self.hostname for c in WILDCARD_CHARS)

    @property
    def has_steps(self) -> bool:
        return bool(self.steps)

    def delay_for(self, field_type: FieldType) -> int:
        return self.delays.get(field_type, self.default_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "selectors": {t.value: s for t, s in self.selectors.items()},
            "delays": {t.value: d for t, d in self.delays.items()},
            "default_delay_ms": self.default_delay_ms,
            "exclusions": sorted(self.exclusions),
            "restricted_types": sorted(t.value for t in self.restricted_types),
            "custom_handlers": dict(self.custom_handlers),
            "steps": [
                {
                    "name": s.name,
                    "url_pattern": s.url_pattern,
                    "selectors": {t.value: sel for t, sel in s.selectors.items()},
                    "next_button": s.next_button,
                    "wait_for_load_ms": s.wait_for_load_ms,
                    "skip": list(s.skip),
                }
                for s in self.steps
            ],
            "metadata": {
                "name": self.metadata.name,
                "version": self.metadata.version,
                "source": self.metadata.source,
                **dict(self.metadata.extra),
            },
        }


@dataclass(frozen=True)
class StepInfo:
    """The active step of a session, as handed to the detector and host."""
    step: str
    index: int
    total: int
    selectors: Mapping[FieldType, str]
    next_button: str | None
    wait_for_load_ms: int
    skip: tuple[str, ...]

    @property
    def is_last(self) -> bool:
        return self.index == self.total - 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "index": self.index,
            "total": self.total,
            "selectors": {t.value: s for t, s in self.selectors.items()},
            "next_button": self.next_button,
            "wait_for_load_ms": self.wait_for_load_ms,
            "skip": list(self.skip),
        }


class StepState(Enum):
    """Lifecycle of a step session."""
    ACTIVE = "active"
    COMPLETED = "completed"
    IDLE = "idle"  # Stalled; waits for navigation or reset


@dataclass
class StepSession:
    """Step progress for one page session on one rule."""
    session_id: str
    rule: SiteRule
    index: int = 0
    state: StepState = StepState.ACTIVE
    started: bool = False
    timer: TimerHandle | None = None

    @property
    def current_step(self) -> FormStep | None:
        if self.state is not StepState.ACTIVE or self.index >= len(self.rule.steps):
            return None
        return self.rule.steps[self.index]


@dataclass
class RuleLoadResult:
    """Outcome of one load attempt."""
    loaded: list[str] = field(default_factory=list)
    errors: list[RuleLoadError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "loaded": list(self.loaded),
            "errors": [{"pattern": e.pattern, "message": e.message} for e in self.errors],
        }


def normalize_hostname(hostname: str) -> str:
    """Lowercase, drop any port and trailing dot."""
    host = (hostname or "").strip().lower()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.split("/", 1)[0]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def pattern_specificity(pattern: str) -> tuple[int, int]:
    """(literal prefix length, literal character count) of a hostname glob."""
    prefix = len(pattern)
    for i, c in enumerate(pattern):
        if c in WILDCARD_CHARS:
            prefix = i
            break
    literal = sum(1 for c in pattern if c not in WILDCARD_CHARS)
    return prefix, literal


def build_rule(pattern: str, data: Mapping[str, Any], order: int = 0, source: str = "inline",
               default_step_wait_ms: int = 1000) -> SiteRule:
    """
    Validate raw rule data and freeze it into a SiteRule.

    Raises:
        RuleLoadError: if the data is malformed
    """
    if any(c in pattern for c in WILDCARD_CHARS):
        hostname = pattern.strip().lower()
    else:
        hostname = normalize_hostname(pattern)
    if not hostname:
        raise RuleLoadError("Empty hostname pattern", pattern=pattern, stage="rule_load")
    if not isinstance(data, Mapping):
        raise RuleLoadError(
            f"Rule data must be a mapping, got {type(data).__name__}",
            pattern=pattern,
            stage="rule_load",
        )

    try:
        parsed = SiteRuleData.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}" for err in e.errors()
        )
        raise RuleLoadError(f"Invalid rule for {pattern}: {problems}", pattern=pattern, stage="rule_load")

    steps = tuple(
        FormStep(
            name=step.name,
            selectors=MappingProxyType(dict(step.selectors)),
            url_pattern=step.url_pattern,
            next_button=step.next_button,
            wait_for_load_ms=step.wait_for_load_ms if step.wait_for_load_ms is not None else default_step_wait_ms,
            skip=tuple(step.skip),
        )
        for step in parsed.steps
    )
    meta = dict(parsed.metadata)
    metadata = SiteRuleMetadata(
        name=str(meta.pop("name", "") or ""),
        version=str(meta.pop("version", "") or ""),
        source=source,
        extra=MappingProxyType(meta),
    )

    return SiteRule(
        hostname=hostname,
        selectors=MappingProxyType(dict(parsed.selectors)),
        delays=MappingProxyType(dict(parsed.delays)),
        exclusions=frozenset(parsed.exclusions),
        restricted_types=frozenset(parsed.restricted_types),
        custom_handlers=MappingProxyType(dict(parsed.custom_handlers)),
        steps=steps,
        default_delay_ms=parsed.default_delay_ms,
        metadata=metadata,
        order=order,
    )


class SiteRulesEngine:
    """
    Hostname-indexed override rules with multi-step form tracking.

    Provides:
    - Rule loading from dicts or YAML with per-rule validation
    - Exact-then-glob hostname matching, cached per hostname
    - Explicit step sessions with cancellable stall timers
    """

    def __init__(
        self,
        cache: CacheManager,
        task_queue: TaskQueue,
        reporter: ErrorReporter | None = None,
        config: CoreConfig | None = None,
    ):
        """
        Initialize the engine.

        Args:
            cache: Cache manager owning the url_pattern_cache
            task_queue: Queue used for step stall timers
            reporter: Where rule load errors and stalls are reported
            config: Core configuration
        """
        self.cache = cache
        self.task_queue = task_queue
        self.reporter = reporter or ErrorReporter()
        self.config = config or CoreConfig()
        self._exact: dict[str, SiteRule] = {}
        self._patterns: list[SiteRule] = []
        self._sessions: dict[str, StepSession] = {}
        self._source: dict[str, Any] | None = None
        self._source_path: Path | None = None

    # ---------------------------------------------------------------------
    # Loading
    # ---------------------------------------------------------------------

    def load_site_rules(self, ruleset: Mapping[str, Any], source: str = "inline") -> RuleLoadResult:
        """
        Replace the loaded rules with a new ruleset.

        Malformed rules are discarded and reported; the rest still load.
        """
        if not isinstance(ruleset, Mapping):
            error = RuleLoadError(
                f"Ruleset must be a mapping of hostname to rule, got {type(ruleset).__name__}",
                stage="rule_load",
            )
            self.reporter.report(error)
            return RuleLoadResult(errors=[error])

        self._source = copy.deepcopy(dict(ruleset))
        if source == "inline":
            self._source_path = None
        return self._apply(self._source, source)

    def load_site_rules_file(self, path: str | Path) -> RuleLoadResult:
        """Load a YAML ruleset and remember it as the reload source."""
        file_path = Path(path)
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            error = RuleLoadError(f"Could not read rules file {file_path}: {e}", stage="rule_load")
            self.reporter.report(error)
            return RuleLoadResult(errors=[error])

        self._source_path = file_path
        return self.load_site_rules(data, source=str(file_path))

    def reload_site_rules(self) -> RuleLoadResult:
        """
        Re-parse the last supplied ruleset.

        A file source is read again from disk. Caches that depend on rules
        are cleared and every step session is reset.
        """
        if self._source_path is not None:
            return self.load_site_rules_file(self._source_path)
        if self._source is not None:
            return self._apply(self._source, "inline")
        logger.debug("No site rules loaded yet, nothing to reload")
        return RuleLoadResult()

    def _apply(self, ruleset: Mapping[str, Any], source: str) -> RuleLoadResult:
        result = RuleLoadResult()
        exact: dict[str, SiteRule] = {}
        patterns: list[SiteRule] = []

        for order, (pattern, data) in enumerate(ruleset.items()):
            try:
                rule = build_rule(
                    str(pattern),
                    data,
                    order=order,
                    source=source,
                    default_step_wait_ms=self.config.default_step_wait_ms,
                )
            except RuleLoadError as e:
                result.errors.append(e)
                self.reporter.report(e)
                continue
            if rule.is_pattern:
                patterns.append(rule)
            else:
                exact[rule.hostname] = rule
            result.loaded.append(rule.hostname)

        self._exact = exact
        self._patterns = patterns
        self.cache.url_pattern_cache.clear()
        self.cache.field_cache.clear()
        self.reset_all_sessions()
        logger.info(
            f"Loaded {len(result.loaded)} site rules from {source}"
            + (f" ({len(result.errors)} discarded)" if result.errors else "")
        )
        return result

    @property
    def rules(self) -> list[SiteRule]:
        return sorted([*self._exact.values(), *self._patterns], key=lambda r: r.order)

    # ---------------------------------------------------------------------
    # Matching
    # ---------------------------------------------------------------------

    def match(self, hostname: str) -> SiteRule | None:
        """
        Find the rule for a hostname.

        Exact hostnames win over patterns. Among matching patterns the one
        with the longest literal prefix wins, then the one with the most
        literal characters, then the one loaded first.
        """
        host = normalize_hostname(hostname)
        if not host:
            return None

        cached = self.cache.url_pattern_cache.get(host)
        if cached is not None:
            return cached.data

        rule = self._exact.get(host)
        if rule is None:
            candidates = [r for r in self._patterns if fnmatchcase(host, r.hostname)]
            if candidates:
                rule = max(
                    candidates,
                    key=lambda r: (*pattern_specificity(r.hostname), -r.order),
                )

        self.cache.url_pattern_cache.put(host, rule)
        return rule

    # ---------------------------------------------------------------------
    # Step sessions
    # ---------------------------------------------------------------------

    def get_session(self, session_id: str) -> StepSession | None:
        return self._sessions.get(session_id)

    def resolve_step(
        self,
        rule: SiteRule | None,
        session_id: str | None,
        marker: str | None = None,
    ) -> StepInfo | None:
        """
        Get the active step of a session on a multi-step rule.

        A fresh session starts at the first step, or at the step whose name
        or URL fragment matches marker. Stalled and finished sessions have
        no active step until navigate() or reset_session().
        """
        if rule is None or not rule.has_steps or not session_id:
            return None

        session = self._sessions.get(session_id)
        if session is None or session.rule.hostname != rule.hostname:
            if session is not None:
                self._cancel_timer(session)
            session = StepSession(session_id=session_id, rule=rule)
            self._sessions[session_id] = session

        if not session.started:
            if marker:
                for i, step in enumerate(rule.steps):
                    if step.matches_marker(marker):
                        session.index = i
                        break
            self._activate(session)

        step = session.current_step
        if step is None:
            return None
        return self._step_info(session, step)

    def complete_step(self, session_id: str) -> StepInfo | None:
        """
        Advance a session past its active step.

        Returns the new active step, or None when the flow is finished or
        the session has no active step.
        """
        session = self._sessions.get(session_id)
        if session is None or session.current_step is None:
            logger.debug(f"Step completed for session {session_id} with no active step")
            return None

        self._cancel_timer(session)
        finished = session.rule.steps[session.index].name
        session.index += 1
        if session.index >= len(session.rule.steps):
            session.state = StepState.COMPLETED
            logger.info(f"Session {session_id}: completed final step '{finished}' on {session.rule.hostname}")
            return None

        self._activate(session)
        step = session.current_step
        logger.info(f"Session {session_id}: '{finished}' -> '{step.name}'")
        return self._step_info(session, step)

    def navigate(self, session_id: str) -> None:
        """Page navigation: cancel pending waits and start over on the next resolve."""
        self.reset_session(session_id)

    def reset_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._cancel_timer(session)
            logger.debug(f"Reset step session {session_id}")

    def reset_all_sessions(self) -> None:
        for session_id in list(self._sessions):
            self.reset_session(session_id)

    def _activate(self, session: StepSession) -> None:
        session.started = True
        session.state = StepState.ACTIVE
        step = session.rule.steps[session.index]
        wait = step.wait_for_load_ms + self.config.step_stall_timeout_ms
        session.timer = self.task_queue.call_later(
            wait,
            lambda: self._on_stall(session.session_id, step.name),
            label=f"step-stall:{session.session_id}:{step.name}",
        )

    def _on_stall(self, session_id: str, step_name: str) -> None:
        session = self._sessions.get(session_id)
        current = session.current_step if session is not None else None
        if current is None or current.name != step_name:
            return
        session.timer = None
        session.state = StepState.IDLE
        self.reporter.report(StepStallError(
            f"Step '{step_name}' did not complete in time",
            session_id=session_id,
            step=step_name,
            stage="resolve_step",
            hostname=session.rule.hostname,
        ))

    def _cancel_timer(self, session: StepSession) -> None:
        if session.timer is not None:
            self.task_queue.cancel(session.timer)
            session.timer = None

    @staticmethod
    def _step_info(session: StepSession, step: FormStep) -> StepInfo:
        return StepInfo(
            step=step.name,
            index=session.index,
            total=len(session.rule.steps),
            selectors=step.selectors,
            next_button=step.next_button,
            wait_for_load_ms=step.wait_for_load_ms,
            skip=step.skip,
        )


# Rules shipped with the package, keyed by hostname pattern
DEFAULT_SITE_RULES: dict[str, dict[str, Any]] = {}


def _register_default(patterns: list[str], rule: dict[str, Any]) -> None:
    for pattern in patterns:
        DEFAULT_SITE_RULES[pattern] = rule


_register_default(
    ["amazon.com", "*.amazon.com", "amazon.co.uk", "*.amazon.co.uk", "amazon.de", "*.amazon.de"],
    {
        "metadata": {"name": "Amazon"},
        "selectors": {
            "full_name": 'input[name="customerName"]',
            "email": 'input[name="email"]',
            "phone": 'input[name="phoneNumber"]',
        },
        "steps": [
            {
                "name": "address",
                "url_pattern": "/checkout/address",
                "selectors": {
                    "street": 'input[name="address1"]',
                    "city": 'input[name="city"]',
                    "state": 'input[name="state"]',
                    "zip": 'input[name="postalCode"]',
                    "phone": 'input[name="phoneNumber"]',
                },
                "next_button": 'input[name="shipToThisAddress"], .a-button-primary',
            },
            {
                "name": "payment",
                "url_pattern": "/checkout/payment",
                "selectors": {
                    "card_number": 'input[name="addCreditCardNumber"]',
                    "full_name": 'input[name="ppw-accountHolderName"]',
                    "expiry_date": 'select[name="ppw-expirationDate_month"]',
                },
                "skip": ['input[name="addCreditCardVerificationNumber"]'],
                "next_button": ".a-button-primary",
                "wait_for_load_ms": 2000,
            },
        ],
        "exclusions": [
            'input[name="password"]',
            'input[name="passwordCheck"]',
            'input[type="password"]',
            ".cvf-widget input",
            '[data-testid="captcha"]',
        ],
        "default_delay_ms": 300,
    },
)

_register_default(
    ["accounts.google.com", "myaccount.google.com"],
    {
        "metadata": {"name": "Google"},
        "selectors": {
            "first_name": 'input[name="firstName"]',
            "last_name": 'input[name="lastName"]',
            "email": 'input[name="Email"]',
            "phone": 'input[name="RecoveryPhoneNumber"]',
        },
        "exclusions": [
            'input[name="Passwd"]',
            'input[name="PasswdAgain"]',
            'input[type="password"]',
            ".g-recaptcha",
            'input[name="ca"]',
            'input[name="challengeId"]',
        ],
        "custom_handlers": {"before_fill": "handleGoogleBeforeFill", "after_fill": "handleGoogleAfterFill"},
    },
)

_register_default(
    ["*.bankofamerica.com", "*.chase.com", "*.wellsfargo.com", "*.capitalone.com"],
    {
        "metadata": {"name": "Banking"},
        "selectors": {
            "first_name": 'input[name*="firstName"], input[name*="first_name"]',
            "last_name": 'input[name*="lastName"], input[name*="last_name"]',
            "email": 'input[name*="email"]',
            "zip": 'input[name*="zip"], input[name*="postal"]',
        },
        "exclusions": [
            'input[type="password"]',
            'input[name*="password"]',
            'input[name*="ssn"]',
            'input[name*="account"]',
            'input[name*="routing"]',
            'input[name*="pin"]',
            'input[name*="cvv"]',
            ".otp-input",
        ],
        "restricted_types": ["password", "card_number", "cvv"],
        "default_delay_ms": 800,
        "custom_handlers": {"security_check": "performBankingSecurity"},
    },
)

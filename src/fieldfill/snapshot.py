"""
Element snapshots.

The detector never holds live DOM nodes. Hosts hand it an ElementSnapshot:
the attributes and surrounding text of one form control, captured once. A
snapshot built from a BeautifulSoup document keeps only a weak reference to
its Tag.

Two derived keys identify elements without node identity:
- fingerprint: cache key for one concrete element on one page
- signature: coarser key used to generalize learned corrections
"""

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any
import hashlib
import logging
import re
import weakref

import soupsieve
from bs4 import BeautifulSoup, Tag

from fieldfill.models import DetectionContext

logger = logging.getLogger(__name__)

FORM_CONTROLS = ("input", "select", "textarea")

# Input types that never carry profile data
SKIPPED_INPUT_TYPES = frozenset({"hidden", "submit", "button", "image", "reset", "file", "checkbox", "radio"})

# Text nodes inside these never describe a neighbouring field
_TEXTLESS_PARENTS = frozenset({"select", "option", "textarea", "script", "style"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9@]+")

MAX_CONTEXT_CHARS = 200


def normalize_text(text: str | None) -> str:
    """
    Normalize an identifier or label for matching.

    Splits camelCase, lowercases and turns separators into single spaces:
    "email_addr" -> "email addr", "firstName" -> "first name".
    """
    if not text:
        return ""
    spaced = _CAMEL_BOUNDARY.sub(" ", text)
    return _NON_ALNUM.sub(" ", spaced.lower()).strip()


def _short_hash(*parts: Any) -> str:
    content = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def _make_weakref(obj: Any) -> weakref.ref | None:
    if obj is None:
        return None
    try:
        return weakref.ref(obj)
    except TypeError:
        return None


@dataclass(frozen=True)
class ElementSnapshot:
    """Attributes and context of one form control at observation time."""
    tag: str = "input"
    input_type: str = "text"
    name: str = ""
    id: str = ""
    class_name: str = ""
    placeholder: str = ""
    autocomplete: str = ""
    title: str = ""
    aria_label: str = ""
    label: str = ""
    parent_text: str = ""
    sibling_text: str = ""
    section_text: str = ""
    position: int = 0
    form_id: str = ""
    hostname: str = ""
    session_id: str | None = None
    # Page URL or step name; positions a fresh multi-step session
    step_marker: str | None = None
    attributes: tuple[tuple[str, str], ...] = ()
    element_ref: weakref.ref | None = field(default=None, compare=False, repr=False)

    @cached_property
    def fingerprint(self) -> str:
        """Stable key for this element on this page, independent of node identity."""
        return _short_hash(
            self.hostname.lower(),
            self.form_id,
            self.position,
            self.tag.lower(),
            self.input_type.lower(),
            self.name,
            self.id,
            self.autocomplete.strip().lower(),
        )

    @cached_property
    def signature(self) -> str:
        """Structural key shared by similar fields across pages and sites."""
        return _short_hash(
            self.tag.lower(),
            self.input_type.lower(),
            normalize_text(self.name),
            normalize_text(self.label),
        )

    @property
    def element(self) -> Any:
        return self.element_ref() if self.element_ref is not None else None

    def context(self) -> DetectionContext:
        """Capture the immutable detection context."""
        surrounding = " ".join(
            part for part in (self.parent_text, self.sibling_text, self.section_text) if part
        )
        return DetectionContext(
            surrounding_text=surrounding[:MAX_CONTEXT_CHARS * 2],
            label_text=self.label,
            placeholder_text=self.placeholder,
            attributes=tuple(sorted(self.relevant_attributes().items())),
        )

    def relevant_attributes(self) -> dict[str, str]:
        """The attributes that feed scoring, without empty values."""
        values = {
            "tag": self.tag,
            "type": self.input_type,
            "name": self.name,
            "id": self.id,
            "class": self.class_name,
            "placeholder": self.placeholder,
            "autocomplete": self.autocomplete,
            "title": self.title,
            "aria-label": self.aria_label,
        }
        return {k: v for k, v in values.items() if v}

    def signals(self) -> dict[str, Any]:
        """JSON-safe signal snapshot stored with learned corrections."""
        return {
            "attributes": self.relevant_attributes(),
            "label": self.label,
            "parent_text": self.parent_text[:MAX_CONTEXT_CHARS],
            "section_text": self.section_text[:MAX_CONTEXT_CHARS],
            "position": self.position,
        }

    @cached_property
    def _match_tag(self) -> Tag:
        live = self.element
        if isinstance(live, Tag):
            return live
        attrs = dict(self.attributes) or self.relevant_attributes()
        attrs.pop("tag", None)
        soup = BeautifulSoup("", "html.parser")
        return soup.new_tag(self.tag.lower(), attrs=attrs)

    def matches(self, selector: str) -> bool:
        """
        Test a CSS selector against this element.

        Uses the live Tag when it is still around (so combinators work),
        otherwise a detached tag rebuilt from the captured attributes.
        Raises soupsieve.SelectorSyntaxError for malformed selectors.
        """
        return bool(soupsieve.match(selector, self._match_tag))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "type": self.input_type,
            "name": self.name,
            "id": self.id,
            "class": self.class_name,
            "placeholder": self.placeholder,
            "autocomplete": self.autocomplete,
            "title": self.title,
            "aria_label": self.aria_label,
            "label": self.label,
            "parent_text": self.parent_text,
            "sibling_text": self.sibling_text,
            "section_text": self.section_text,
            "position": self.position,
            "form_id": self.form_id,
            "hostname": self.hostname,
            "session_id": self.session_id,
            "step_marker": self.step_marker,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementSnapshot":
        """Build a snapshot from a host message payload."""
        attributes = {str(k): str(v) for k, v in (data.get("attributes") or {}).items()}
        return cls(
            tag=str(data.get("tag") or "input").lower(),
            input_type=str(data.get("type") or attributes.get("type") or "text").lower(),
            name=data.get("name") or attributes.get("name", ""),
            id=data.get("id") or attributes.get("id", ""),
            class_name=data.get("class") or attributes.get("class", ""),
            placeholder=data.get("placeholder") or attributes.get("placeholder", ""),
            autocomplete=data.get("autocomplete") or attributes.get("autocomplete", ""),
            title=data.get("title") or attributes.get("title", ""),
            aria_label=data.get("aria_label") or attributes.get("aria-label", ""),
            label=data.get("label", ""),
            parent_text=data.get("parent_text", ""),
            sibling_text=data.get("sibling_text", ""),
            section_text=data.get("section_text", ""),
            position=int(data.get("position", 0)),
            form_id=data.get("form_id", ""),
            hostname=(data.get("hostname") or "").lower(),
            session_id=data.get("session_id") or data.get("sessionId"),
            step_marker=(
                data.get("step_marker") or data.get("stepMarker") or data.get("url") or None
            ),
            attributes=tuple(sorted(attributes.items())),
        )


# =========================================================================
# Snapshotting BeautifulSoup documents
# =========================================================================

def _attr(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def _clean(text: str | None) -> str:
    return " ".join((text or "").split())


def _root(tag: Tag) -> Tag:
    node = tag
    while node.parent is not None:
        node = node.parent
    return node


def _visible_text(tag: Tag) -> str:
    parts = [
        str(s) for s in tag.find_all(string=True)
        if s.parent is not None and s.parent.name not in _TEXTLESS_PARENTS
    ]
    return _clean(" ".join(parts))


def find_label(tag: Tag) -> str:
    """
    Resolve the label text of a form control.

    Checks, in order: <label for=id>, an enclosing <label>, aria-labelledby,
    then the nearest preceding sibling that is a label or short text.
    """
    element_id = _attr(tag, "id")
    if element_id:
        label = _root(tag).find("label", attrs={"for": element_id})
        if label is not None:
            return _visible_text(label)

    enclosing = tag.find_parent("label")
    if enclosing is not None:
        return _visible_text(enclosing)

    labelled_by = _attr(tag, "aria-labelledby")
    if labelled_by:
        ref = _root(tag).find(id=labelled_by.split()[0])
        if ref is not None:
            return _visible_text(ref)

    for prev in tag.find_previous_siblings():
        if not isinstance(prev, Tag):
            continue
        if prev.name in FORM_CONTROLS:
            break
        text = _visible_text(prev)
        if prev.name == "label" or (text and len(text) < 100):
            return text
    return ""


def _sibling_text(tag: Tag) -> str:
    parent = tag.parent
    if parent is None:
        return ""
    siblings = [c for c in parent.children if isinstance(c, Tag)]
    try:
        index = next(i for i, s in enumerate(siblings) if s is tag)
    except StopIteration:
        return ""
    window = siblings[max(0, index - 2):index] + siblings[index + 1:index + 3]
    return _clean(" ".join(_visible_text(s) for s in window))[:MAX_CONTEXT_CHARS]


def _section_text(tag: Tag) -> str:
    parts = []
    fieldset = tag.find_parent("fieldset")
    if fieldset is not None:
        legend = fieldset.find("legend")
        if legend is not None:
            parts.append(_visible_text(legend))
    heading = tag.find_previous(["h1", "h2", "h3", "h4"])
    if heading is not None:
        parts.append(_visible_text(heading))
    form = tag.find_parent("form")
    if form is not None:
        parts.append(_attr(form, "class"))
    return _clean(" ".join(parts))[:MAX_CONTEXT_CHARS]


def snapshot_element(
    tag: Tag,
    hostname: str = "",
    session_id: str | None = None,
    step_marker: str | None = None,
) -> ElementSnapshot:
    """Capture a snapshot of one BeautifulSoup form control."""
    form = tag.find_parent("form")
    scope = form if form is not None else _root(tag)
    controls = scope.find_all(list(FORM_CONTROLS))
    position = next((i for i, c in enumerate(controls) if c is tag), 0)

    parent_text = _visible_text(tag.parent)[:MAX_CONTEXT_CHARS] if tag.parent is not None else ""
    attributes = {k: (" ".join(v) if isinstance(v, list) else str(v)) for k, v in tag.attrs.items()}

    return ElementSnapshot(
        tag=tag.name.lower(),
        input_type=(_attr(tag, "type") or ("text" if tag.name == "input" else tag.name)).lower(),
        name=_attr(tag, "name"),
        id=_attr(tag, "id"),
        class_name=_attr(tag, "class"),
        placeholder=_attr(tag, "placeholder"),
        autocomplete=_attr(tag, "autocomplete"),
        title=_attr(tag, "title"),
        aria_label=_attr(tag, "aria-label"),
        label=find_label(tag),
        parent_text=parent_text,
        sibling_text=_sibling_text(tag),
        section_text=_section_text(tag),
        position=position,
        form_id=_attr(form, "id") if form is not None else "",
        hostname=hostname.lower(),
        session_id=session_id,
        step_marker=step_marker,
        attributes=tuple(sorted(attributes.items())),
        element_ref=_make_weakref(tag),
    )


def snapshot_document(
    soup: BeautifulSoup,
    hostname: str = "",
    session_id: str | None = None,
    step_marker: str | None = None,
) -> list[ElementSnapshot]:
    """
    Snapshot every fillable form control in a parsed document.

    The caller owns the soup; snapshots only weakly reference its tags.
    """
    snapshots = []
    for tag in soup.find_all(list(FORM_CONTROLS)):
        input_type = _attr(tag, "type").lower()
        if tag.name == "input" and input_type in SKIPPED_INPUT_TYPES:
            continue
        if tag.has_attr("disabled"):
            continue
        try:
            snapshots.append(snapshot_element(tag, hostname, session_id, step_marker))
        except Exception as e:
            logger.debug(f"Could not snapshot <{tag.name}>: {e}")
    return snapshots


def snapshots_from_html(
    html: str,
    hostname: str = "",
    session_id: str | None = None,
    step_marker: str | None = None,
) -> tuple[BeautifulSoup, list[ElementSnapshot]]:
    """Parse HTML and snapshot its form controls. Returns (soup, snapshots)."""
    soup = BeautifulSoup(html, "html.parser")
    return soup, snapshot_document(soup, hostname, session_id, step_marker)

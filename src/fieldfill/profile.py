"""
User profile and persisted record migration.

A Profile holds the values the filler writes into detected fields, split
into personal, work and custom sections. Persisted records (profiles and
learning entries) carry a schema_version; migrate_record() upgrades older
layouts before anything reads them.
"""

from dataclasses import dataclass, field
from typing import Any
import logging

from fieldfill.models import FieldType
from fieldfill.storage import StorageAdapter

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

PROFILE_KEY = "profile"

SECTIONS = ("personal", "work", "custom")

PERSONAL_TYPES = frozenset({
    FieldType.FIRST_NAME, FieldType.LAST_NAME, FieldType.FULL_NAME, FieldType.EMAIL,
    FieldType.PHONE, FieldType.STREET, FieldType.CITY, FieldType.STATE, FieldType.ZIP,
    FieldType.COUNTRY,
})
WORK_TYPES = frozenset({
    FieldType.COMPANY, FieldType.JOB_TITLE, FieldType.WEBSITE, FieldType.LINKEDIN,
})

# Version 1 records used camelCase keys
_LEGACY_KEYS = {
    "detectedType": "detected_type",
    "correctedType": "corrected_type",
    "firstName": "first_name",
    "lastName": "last_name",
    "fullName": "full_name",
    "cardNumber": "card_number",
    "expiryDate": "expiry_date",
    "jobTitle": "job_title",
}


def _snake(key: str) -> str:
    if key in _LEGACY_KEYS:
        return _LEGACY_KEYS[key]
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in key).lstrip("_")


def migrate_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade a persisted record to the current schema.

    Records without schema_version are version 1: camelCase keys (also in
    nested profile sections) and camelCase field type values.
    """
    version = record.get("schema_version", 1)
    if version >= SCHEMA_VERSION:
        return record

    migrated: dict[str, Any] = {}
    for key, value in record.items():
        new_key = _snake(key)
        if isinstance(value, dict) and new_key in ("personal", "work", "custom"):
            value = {_snake(k): v for k, v in value.items()}
        elif new_key in ("detected_type", "corrected_type") and isinstance(value, str):
            value = _snake(value)
        migrated[new_key] = value
    migrated["schema_version"] = SCHEMA_VERSION
    logger.debug(f"Migrated record from schema {version} to {SCHEMA_VERSION}")
    return migrated


def _parse_section(section: dict[str, Any] | None) -> dict[FieldType, str]:
    values: dict[FieldType, str] = {}
    for key, value in (section or {}).items():
        try:
            field_type = FieldType.parse(key)
        except ValueError:
            logger.debug(f"Dropping unknown profile key {key!r}")
            continue
        if value is not None and value != "":
            values[field_type] = str(value)
    return values


@dataclass
class Profile:
    """Values to fill, by section."""
    personal: dict[FieldType, str] = field(default_factory=dict)
    work: dict[FieldType, str] = field(default_factory=dict)
    custom: dict[FieldType, str] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    def value_for(self, field_type: FieldType, section: str | None = None) -> str | None:
        """
        Look up the value for a field type.

        With a section only that section is consulted. Without one, custom
        values win over personal and work values.

        Raises:
            ValueError: if section is not one of SECTIONS
        """
        if section is not None:
            if section not in SECTIONS:
                raise ValueError(f"Unknown profile section '{section}', expected one of {SECTIONS}")
            return getattr(self, section).get(field_type)
        for values in (self.custom, self.personal, self.work):
            if field_type in values:
                return values[field_type]
        if field_type is FieldType.FULL_NAME:
            first = self.value_for(FieldType.FIRST_NAME)
            last = self.value_for(FieldType.LAST_NAME)
            if first or last:
                return " ".join(p for p in (first, last) if p)
        return None

    def set(self, field_type: FieldType, value: str) -> None:
        if field_type in PERSONAL_TYPES:
            self.personal[field_type] = value
        elif field_type in WORK_TYPES:
            self.work[field_type] = value
        else:
            self.custom[field_type] = value

    def is_empty(self) -> bool:
        return not (self.personal or self.work or self.custom)

    def to_dict(self) -> dict[str, Any]:
        return {
            "personal": {t.value: v for t, v in self.personal.items()},
            "work": {t.value: v for t, v in self.work.items()},
            "custom": {t.value: v for t, v in self.custom.items()},
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Profile":
        data = migrate_record(data)
        return cls(
            personal=_parse_section(data.get("personal")),
            work=_parse_section(data.get("work")),
            custom=_parse_section(data.get("custom")),
            schema_version=SCHEMA_VERSION,
        )


class ProfileStore:
    """Loads and saves the profile through the storage adapter."""

    def __init__(self, storage: StorageAdapter, storage_type: str = "sync"):
        self.storage = storage
        self.storage_type = storage_type

    def load(self) -> Profile:
        data = self.storage.read(PROFILE_KEY, self.storage_type)
        if not data:
            return Profile()
        return Profile.from_dict(data)

    def save(self, profile: Profile) -> None:
        self.storage.write(PROFILE_KEY, profile.to_dict(), self.storage_type)

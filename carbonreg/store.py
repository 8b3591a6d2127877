"""
Carbon Credit Store

The authoritative mapping from credit identifier to credit state.

Records are immutable snapshots: attribute fields are written once at
``create`` and the two mutable flags (``verified`` and ``transfer_locked``)
are changed by replacing the stored snapshot. Readers therefore always hold
a consistent view of a record, even while the registry keeps mutating.

    CreditStore
    ├─ create(id, attributes)     AlreadyExists if id present
    ├─ get(id)                    NotFound if absent
    ├─ set_verified(id, status)   unconditional overwrite
    ├─ lock(id)                   one-way, idempotent
    └─ is_transferable(id)        not transfer_locked

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Union

from carbonreg.hardening import (
    AlreadyExists,
    NotFound,
    ValidationError,
    ValidationResult,
    Validators,
)


# =============================================================================
# CATEGORY
# =============================================================================

class CreditCategory(Enum):
    """Closed set of credit categories."""
    FIXATION = "Fixation"
    REDUCED_EMISSION = "ReducedEmission"
    OTHER = "Other"

    @property
    def ordinal(self) -> int:
        """Stable position used by the fingerprint encoding."""
        return _CATEGORY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Union["CreditCategory", str, int]) -> "CreditCategory":
        """
        Resolve a category from its enum member, display name, member name,
        or ordinal.

        ``"Fixation"``, ``"fixation"``, ``"FIXATION"`` and ``0`` all resolve
        to ``CreditCategory.FIXATION``; ``"reduced_emission"`` resolves to
        ``REDUCED_EMISSION``.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value < len(_CATEGORY_ORDER):
                return _CATEGORY_ORDER[value]
            raise ValidationError("category", f"Unknown category ordinal {value}", value)
        if isinstance(value, str):
            wanted = value.strip().replace("_", "").lower()
            for member in cls:
                if wanted in (member.value.lower(), member.name.replace("_", "").lower()):
                    return member
            raise ValidationError("category", f"Unknown category {value!r}", value)
        raise ValidationError("category", f"Expected category, got {type(value).__name__}", value)


_CATEGORY_ORDER = (
    CreditCategory.FIXATION,
    CreditCategory.REDUCED_EMISSION,
    CreditCategory.OTHER,
)


# =============================================================================
# ATTRIBUTES AND RECORDS
# =============================================================================

@dataclass(frozen=True)
class CreditAttributes:
    """
    Descriptive attributes of a carbon credit, fixed at issuance.

    Longitude and latitude are signed integers (fixed-point coordinates);
    dates are unsigned timestamps; quantities are unsigned integers.
    The category accepts anything CreditCategory.parse does. Species is
    kept stripped of surrounding whitespace and null bytes.
    """
    category: CreditCategory
    longitude: int
    latitude: int
    start_date: int
    end_date: int
    co2_equivalent: int
    species: str = ""
    age: int = 0
    area: int = 0
    volume: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", CreditCategory.parse(self.category))
        if isinstance(self.species, str):
            object.__setattr__(self, "species", self.species.strip().replace("\x00", ""))

    def validate(self, max_species_length: int = Validators.MAX_SPECIES_LENGTH) -> ValidationResult:
        """Check every field against its type and range."""
        errors: List[ValidationError] = []

        errors.extend(Validators.validate_key_fields(
            self.longitude, self.latitude, self.start_date, self.end_date,
        ).errors)

        for name in ("co2_equivalent", "age", "area", "volume"):
            errors.extend(Validators.validate_int(getattr(self, name), name).errors)

        errors.extend(Validators.validate_string(
            self.species, "species", max_length=max_species_length,
        ).errors)

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditAttributes":
        """Build attributes from a plain mapping (YAML/JSON input)."""
        missing = [
            k for k in ("category", "longitude", "latitude", "start_date", "end_date", "co2_equivalent")
            if k not in data
        ]
        if missing:
            raise ValidationError(missing[0], "Required attribute missing")

        return cls(
            category=data["category"],
            longitude=data["longitude"],
            latitude=data["latitude"],
            start_date=data["start_date"],
            end_date=data["end_date"],
            co2_equivalent=data["co2_equivalent"],
            species=data.get("species", ""),
            age=data.get("age", 0),
            area=data.get("area", 0),
            volume=data.get("volume", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "co2_equivalent": self.co2_equivalent,
            "species": self.species,
            "age": self.age,
            "area": self.area,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class CreditRecord:
    """Snapshot of a single credit's state."""
    credit_id: int
    attributes: CreditAttributes
    verified: bool = False
    transfer_locked: bool = False

    @property
    def transferable(self) -> bool:
        return not self.transfer_locked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_id": self.credit_id,
            "verified": self.verified,
            "transfer_locked": self.transfer_locked,
            **self.attributes.to_dict(),
        }


# =============================================================================
# CREDIT STORE
# =============================================================================

class CreditStore:
    """
    Mapping from credit identifier to record.

    The store owns every record and exposes them only by identifier.
    It performs no locking of its own; the lifecycle controller serializes
    access to it.
    """

    def __init__(self):
        self._records: Dict[int, CreditRecord] = {}

    def create(self, credit_id: int, attributes: CreditAttributes) -> CreditRecord:
        """Insert a new record with both flags cleared."""
        if credit_id in self._records:
            raise AlreadyExists(credit_id)

        record = CreditRecord(credit_id=credit_id, attributes=attributes)
        self._records[credit_id] = record
        return record

    def get(self, credit_id: int) -> CreditRecord:
        try:
            return self._records[credit_id]
        except KeyError:
            raise NotFound(credit_id) from None

    def exists(self, credit_id: int) -> bool:
        return credit_id in self._records

    def set_verified(self, credit_id: int, status: bool) -> CreditRecord:
        """Overwrite the verification flag."""
        if not isinstance(status, bool):
            raise ValidationError("status", f"Expected bool, got {type(status).__name__}", status)
        record = self.get(credit_id)
        updated = dataclasses.replace(record, verified=status)
        self._records[credit_id] = updated
        return updated

    def lock(self, credit_id: int) -> CreditRecord:
        """Set the transfer lock. Locking a locked record is a no-op."""
        record = self.get(credit_id)
        if record.transfer_locked:
            return record

        updated = dataclasses.replace(record, transfer_locked=True)
        self._records[credit_id] = updated
        return updated

    def is_transferable(self, credit_id: int) -> bool:
        return self.get(credit_id).transferable

    def ids(self) -> List[int]:
        """All identifiers in ascending order."""
        return sorted(self._records)

    def records(self) -> Iterator[CreditRecord]:
        for credit_id in self.ids():
            yield self._records[credit_id]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, credit_id: object) -> bool:
        return credit_id in self._records

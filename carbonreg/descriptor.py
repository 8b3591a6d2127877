"""
Canonical credit descriptors.

A descriptor is the tilde-delimited rendering of a credit's current state
consumed by external metadata readers:

    verified ~ category ~ longitude ~ longitude ~ latitude ~ start_date ~ end_date ~ co2_equivalent

``verified`` is ``true`` or ``false``; the category is its display name
(``Fixation``, ``ReducedEmission``, ``Other``); numbers are base-10 with no
leading zeros and a minus sign only when negative.

Longitude appears twice. Existing readers depend on exactly this shape, so
the field order and the delimiter are part of the compatibility surface and
must not change.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Tuple

from carbonreg.store import CreditCategory, CreditRecord


DELIMITER = "~"

DESCRIPTOR_FIELDS: Tuple[str, ...] = (
    "verified",
    "category",
    "longitude",
    "longitude",
    "latitude",
    "start_date",
    "end_date",
    "co2_equivalent",
)

_SIGNED = re.compile(r"^(0|-?[1-9][0-9]*)$")
_UNSIGNED = re.compile(r"^(0|[1-9][0-9]*)$")


class DescriptorError(ValueError):
    """Malformed descriptor string."""


@dataclass(frozen=True)
class Descriptor:
    """Fields recovered from a descriptor string."""
    verified: bool
    category: CreditCategory
    longitude: int
    latitude: int
    start_date: int
    end_date: int
    co2_equivalent: int


def _bool(value: bool) -> str:
    return "true" if value else "false"


def encode(record: CreditRecord) -> str:
    """Render a record as its canonical descriptor."""
    attrs = record.attributes
    return DELIMITER.join((
        _bool(record.verified),
        attrs.category.value,
        str(attrs.longitude),
        str(attrs.longitude),
        str(attrs.latitude),
        str(attrs.start_date),
        str(attrs.end_date),
        str(attrs.co2_equivalent),
    ))


def decode(descriptor: str) -> Descriptor:
    """
    Parse a descriptor back into its fields.

    Only canonical input is accepted: exactly eight fields, lowercase
    booleans, a known category name, no leading zeros or ``+`` signs, and
    both longitude fields equal.
    """
    parts = descriptor.split(DELIMITER)
    if len(parts) != len(DESCRIPTOR_FIELDS):
        raise DescriptorError(
            f"Expected {len(DESCRIPTOR_FIELDS)} fields, got {len(parts)}"
        )

    verified_s, category_s, lon_a, lon_b, lat_s, start_s, end_s, co2_s = parts

    if verified_s not in ("true", "false"):
        raise DescriptorError(f"verified must be 'true' or 'false', got {verified_s!r}")

    try:
        category = CreditCategory(category_s)
    except ValueError:
        raise DescriptorError(f"Unknown category {category_s!r}") from None

    for name, value, pattern in (
        ("longitude", lon_a, _SIGNED),
        ("longitude", lon_b, _SIGNED),
        ("latitude", lat_s, _SIGNED),
        ("start_date", start_s, _UNSIGNED),
        ("end_date", end_s, _UNSIGNED),
        ("co2_equivalent", co2_s, _UNSIGNED),
    ):
        if not pattern.match(value):
            raise DescriptorError(f"{name} is not a canonical integer: {value!r}")

    if lon_a != lon_b:
        raise DescriptorError(f"Longitude fields disagree: {lon_a} != {lon_b}")

    return Descriptor(
        verified=verified_s == "true",
        category=category,
        longitude=int(lon_a),
        latitude=int(lat_s),
        start_date=int(start_s),
        end_date=int(end_s),
        co2_equivalent=int(co2_s),
    )

"""Uniqueness fingerprints for carbon credits.

A credit's fingerprint is ``sha256(preimage)`` where the preimage is the
fixed-order, fixed-width encoding of the five defining fields:

    offset  width  field        encoding
    ------  -----  -----------  -------------------------------------------
         0     16  domain tag   ASCII "carbonreg/key/v1"
        16      1  category     ordinal (Fixation=0, ReducedEmission=1, Other=2)
        17     32  longitude    big-endian two's complement (int256)
        49     32  latitude     big-endian two's complement (int256)
        81     32  start_date   big-endian unsigned (uint256)
       113     32  end_date     big-endian unsigned (uint256)

Every field has a fixed position and width, so two distinct tuples can never
share a preimage. Species, age, area, volume and CO2 equivalent do not take
part in the key.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Union

from carbonreg.hardening import ValidationError
from carbonreg.store import CreditAttributes, CreditCategory


DOMAIN_TAG = b"carbonreg/key/v1"
WORD_SIZE = 32
PREIMAGE_SIZE = len(DOMAIN_TAG) + 1 + 4 * WORD_SIZE
FINGERPRINT_SIZE = 32


@dataclass(frozen=True)
class Fingerprint:
    """Fixed-size uniqueness key of a credit."""
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != FINGERPRINT_SIZE:
            raise ValueError(f"Fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(self.digest)}")

    def hex(self) -> str:
        return self.digest.hex()

    @classmethod
    def from_hex(cls, value: str) -> "Fingerprint":
        return cls(bytes.fromhex(value))

    def __str__(self) -> str:
        return self.hex()


def _word(value: int, field_name: str, signed: bool) -> bytes:
    try:
        return value.to_bytes(WORD_SIZE, "big", signed=signed)
    except OverflowError:
        kind = "int256" if signed else "uint256"
        raise ValidationError(field_name, f"Does not fit {kind}", value) from None


def encode_key_fields(
    category: Union[CreditCategory, str, int],
    longitude: int,
    latitude: int,
    start_date: int,
    end_date: int,
) -> bytes:
    """Return the canonical preimage of the uniqueness key."""
    cat = CreditCategory.parse(category)
    for name, value in (
        ("longitude", longitude),
        ("latitude", latitude),
        ("start_date", start_date),
        ("end_date", end_date),
    ):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(name, f"Expected integer, got {type(value).__name__}", value)

    preimage = b"".join((
        DOMAIN_TAG,
        bytes([cat.ordinal]),
        _word(longitude, "longitude", signed=True),
        _word(latitude, "latitude", signed=True),
        _word(start_date, "start_date", signed=False),
        _word(end_date, "end_date", signed=False),
    ))
    return preimage


def derive(
    category: Union[CreditCategory, str, int],
    longitude: int,
    latitude: int,
    start_date: int,
    end_date: int,
) -> Fingerprint:
    """Derive the uniqueness fingerprint of a credit's defining fields."""
    preimage = encode_key_fields(category, longitude, latitude, start_date, end_date)
    return Fingerprint(hashlib.sha256(preimage).digest())


def derive_from_attributes(attributes: CreditAttributes) -> Fingerprint:
    return derive(
        attributes.category,
        attributes.longitude,
        attributes.latitude,
        attributes.start_date,
        attributes.end_date,
    )

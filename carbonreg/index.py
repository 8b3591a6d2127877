"""Uniqueness index of consumed credit fingerprints.

Membership is permanent: there is no removal operation, so a key consumed by
an issuance stays consumed even after the credit's asset is destroyed.
"""

from __future__ import annotations

from typing import FrozenSet, Set

from carbonreg.fingerprint import Fingerprint
from carbonreg.hardening import DuplicateCredit


class UniquenessIndex:
    """Set of every fingerprint the registry has issued under."""

    def __init__(self):
        self._keys: Set[bytes] = set()

    def contains(self, fingerprint: Fingerprint) -> bool:
        return fingerprint.digest in self._keys

    def insert(self, fingerprint: Fingerprint) -> None:
        """Record a fingerprint, failing if it was already consumed."""
        if fingerprint.digest in self._keys:
            raise DuplicateCredit(fingerprint.hex())
        self._keys.add(fingerprint.digest)

    def snapshot(self) -> FrozenSet[str]:
        """Hex values of all consumed keys."""
        return frozenset(k.hex() for k in self._keys)

    def __contains__(self, fingerprint: object) -> bool:
        return isinstance(fingerprint, Fingerprint) and self.contains(fingerprint)

    def __len__(self) -> int:
        return len(self._keys)

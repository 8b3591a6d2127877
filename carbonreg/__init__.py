"""
carbonreg: carbon credit registry invariant engine.

Issues uniquely keyed carbon credit records, tracks their verification and
transfer-lock flags, and renders the canonical descriptor string external
metadata readers consume.

    from carbonreg import build_registry, CreditAttributes, CreditCategory

    registry = build_registry()
    credit_id = registry.issue("alice", CreditAttributes(
        category=CreditCategory.FIXATION,
        longitude=-122000000, latitude=37000000,
        start_date=1000, end_date=2000, co2_equivalent=50,
    ))

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"

from carbonreg.hardening import (
    AlreadyExists,
    DuplicateCredit,
    InvalidRange,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    RegistryError,
    RegistryPaused,
    TransferLocked,
    Unauthorized,
    ValidationError,
    ValidationErrors,
)
from carbonreg.store import CreditAttributes, CreditCategory, CreditRecord, CreditStore
from carbonreg.fingerprint import Fingerprint, derive, derive_from_attributes
from carbonreg.index import UniquenessIndex
from carbonreg.descriptor import Descriptor, DescriptorError, decode, encode
from carbonreg.auth import AdministratorSet, Authorizer, SingleAdministrator
from carbonreg.ledger import AssetLedger, InMemoryAssetLedger
from carbonreg.events import (
    CreditIssued,
    EventBus,
    EventSink,
    EventStore,
    Paused,
    RegistryEventSink,
    Unpaused,
    VerificationChanged,
)
from carbonreg.lifecycle import LifecycleController, RegistryState, build_registry

__all__ = [
    "__version__",
    # Errors
    "RegistryError",
    "InvalidRange",
    "DuplicateCredit",
    "NotFound",
    "AlreadyExists",
    "Unauthorized",
    "RegistryPaused",
    "TransferLocked",
    "InvalidStateTransition",
    "LedgerError",
    "ValidationError",
    "ValidationErrors",
    # Model
    "CreditCategory",
    "CreditAttributes",
    "CreditRecord",
    "CreditStore",
    "Fingerprint",
    "derive",
    "derive_from_attributes",
    "UniquenessIndex",
    "Descriptor",
    "DescriptorError",
    "encode",
    "decode",
    # Collaborators
    "Authorizer",
    "SingleAdministrator",
    "AdministratorSet",
    "AssetLedger",
    "InMemoryAssetLedger",
    "EventSink",
    "EventStore",
    "EventBus",
    "RegistryEventSink",
    "CreditIssued",
    "VerificationChanged",
    "Paused",
    "Unpaused",
    # Registry
    "LifecycleController",
    "RegistryState",
    "build_registry",
]

"""
Carbon Credit Lifecycle Controller

The registry aggregate. It owns the credit store, the uniqueness index, the
identifier counter and the registry state, and is the only component that
mutates them.

Record lifecycle:

    Unissued ──issue──► Issued ◄──verify/unverify──► Issued & Verified
                          │
                          └──lock_transfer──► Locked   (one-way; orthogonal
                                                        to verification)

Registry lifecycle:

    ACTIVE ◄──pause / unpause──► PAUSED

Gates:
    issue               registry ACTIVE, valid attributes, unused key
    set_verification    administrator, credit exists
    lock_transfer       administrator, credit exists
    pause / unpause     administrator
    on_before_transfer  registry ACTIVE, credit exists, credit not locked

Every mutating operation runs under a single re-entrant lock and is
all-or-nothing: a failure leaves the store, the index, the counter and the
asset ledger untouched.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from carbonreg import descriptor as descriptors
from carbonreg.auth import Authorizer, SingleAdministrator
from carbonreg.config import RegistryConfig, get_config
from carbonreg.events import (
    CreditIssued,
    Event,
    EventSink,
    Paused,
    RegistryEventSink,
    Unpaused,
    VerificationChanged,
)
from carbonreg.fingerprint import Fingerprint, derive_from_attributes
from carbonreg.hardening import (
    DuplicateCredit,
    InvalidRange,
    InvariantChecker,
    LedgerError,
    RegistryError,
    RegistryPaused,
    TransferLocked,
    Unauthorized,
    ValidationError,
    Validators,
    atomic,
)
from carbonreg.index import UniquenessIndex
from carbonreg.ledger import AssetLedger, InMemoryAssetLedger
from carbonreg.observability import AuditLogger, RegistryLayer, get_logger, timed_operation
from carbonreg.store import CreditAttributes, CreditRecord, CreditStore

logger = get_logger("controller", RegistryLayer.LIFECYCLE)


class RegistryState(Enum):
    """Registry-wide lifecycle state."""
    ACTIVE = "active"
    PAUSED = "paused"


VALID_STATE_TRANSITIONS = {
    RegistryState.ACTIVE: {RegistryState.PAUSED},
    RegistryState.PAUSED: {RegistryState.ACTIVE},
}

AttributesInput = Union[CreditAttributes, Mapping[str, Any]]


class LifecycleController:
    """
    Issues credits and applies verification, lock and pause operations.

    Example:
        ledger = InMemoryAssetLedger()
        registry = LifecycleController(SingleAdministrator("admin"), ledger)

        credit_id = registry.issue("alice", CreditAttributes(
            category=CreditCategory.FIXATION,
            longitude=-122000000, latitude=37000000,
            start_date=1000, end_date=2000, co2_equivalent=50,
        ))
        registry.set_verification(credit_id, True, caller="admin")
        registry.descriptor(credit_id)
        # 'true~Fixation~-122000000~-122000000~37000000~1000~2000~50'
    """

    def __init__(
        self,
        authorizer: Authorizer,
        ledger: AssetLedger,
        sink: Optional[EventSink] = None,
        *,
        name: str = "Carbon Credit",
        symbol: str = "CCR",
        state: RegistryState = RegistryState.ACTIVE,
        audit: Optional[AuditLogger] = None,
        max_species_length: int = Validators.MAX_SPECIES_LENGTH,
    ):
        self.name = name
        self.symbol = symbol
        self._authorizer = authorizer
        self._ledger = ledger
        self._sink = sink if sink is not None else RegistryEventSink()
        self._audit = audit if audit is not None else AuditLogger()
        self._max_species_length = max_species_length

        self._store = CreditStore()
        self._index = UniquenessIndex()
        self._last_id = 0
        self._state = state
        self._outbox: List[Event] = []
        self._lock = threading.RLock()

        set_hook = getattr(ledger, "set_transfer_hook", None)
        if callable(set_hook):
            set_hook(self.on_before_transfer, self._lock)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    @timed_operation(logger, "issue")
    @atomic()
    def issue(self, owner: Any, attributes: AttributesInput) -> int:
        """
        Issue a new credit to ``owner`` and return its identifier.

        Raises:
            RegistryPaused: registry is paused
            ValidationErrors: an attribute is malformed or out of range
            InvalidRange: start_date >= end_date
            DuplicateCredit: a credit with the same key was already issued
            LedgerError: the asset ledger refused the mint
        """
        if self._state is RegistryState.PAUSED:
            raise RegistryPaused("issue")

        if not isinstance(attributes, CreditAttributes):
            attributes = CreditAttributes.from_dict(dict(attributes))
        attributes.validate(self._max_species_length).raise_if_invalid()

        if attributes.start_date >= attributes.end_date:
            raise InvalidRange(attributes.start_date, attributes.end_date)

        fingerprint = derive_from_attributes(attributes)
        if self._index.contains(fingerprint):
            logger.warning(
                "Duplicate issuance rejected",
                operation="issue",
                error_code=DuplicateCredit.code,
                fingerprint=fingerprint.hex(),
            )
            raise DuplicateCredit(fingerprint.hex())

        credit_id = self._last_id + 1

        # The mint is the only step that can fail; nothing is committed
        # before it succeeds.
        try:
            self._ledger.mint(owner, credit_id)
        except RegistryError:
            raise
        except Exception as e:
            raise LedgerError(f"Mint of credit {credit_id} failed: {e}") from e

        self._store.create(credit_id, attributes)
        self._index.insert(fingerprint)
        self._last_id = credit_id

        self._emit(CreditIssued(
            credit_id=credit_id,
            longitude=attributes.longitude,
            latitude=attributes.latitude,
            start_date=attributes.start_date,
            end_date=attributes.end_date,
            co2_equivalent=attributes.co2_equivalent,
        ))
        logger.info(
            "Credit issued",
            operation="issue",
            credit_id=credit_id,
            owner=str(owner),
            category=attributes.category.value,
            fingerprint=fingerprint.hex(),
        )
        return credit_id

    # ------------------------------------------------------------------
    # Administrator operations
    # ------------------------------------------------------------------

    @atomic()
    def set_verification(self, credit_id: int, status: bool, caller: Any) -> None:
        """Set a credit's verification flag to ``status``."""
        self._require_administrator(caller, "set_verification", "credit", credit_id)
        if not isinstance(status, bool):
            raise ValidationError("status", f"Expected bool, got {type(status).__name__}", status)
        self._store.set_verified(credit_id, status)

        self._emit(VerificationChanged(credit_id=credit_id, status=status))
        self._audit.log(caller, "set_verification", "credit", credit_id, "success", status=status)

    @atomic()
    def lock_transfer(self, credit_id: int, caller: Any) -> None:
        """Lock a credit against transfer. Locking is permanent."""
        self._require_administrator(caller, "lock_transfer", "credit", credit_id)
        already_locked = self._store.get(credit_id).transfer_locked
        self._store.lock(credit_id)

        self._audit.log(
            caller, "lock_transfer", "credit", credit_id, "success",
            already_locked=already_locked,
        )

    @atomic()
    def pause(self, caller: Any) -> None:
        self._require_administrator(caller, "pause", "registry", self.symbol)
        self._transition(RegistryState.PAUSED)
        self._emit(Paused(account=str(caller)))
        self._audit.log(caller, "pause", "registry", self.symbol, "success")

    @atomic()
    def unpause(self, caller: Any) -> None:
        self._require_administrator(caller, "unpause", "registry", self.symbol)
        self._transition(RegistryState.ACTIVE)
        self._emit(Unpaused(account=str(caller)))
        self._audit.log(caller, "unpause", "registry", self.symbol, "success")

    # ------------------------------------------------------------------
    # Asset ledger hook
    # ------------------------------------------------------------------

    @atomic()
    def on_before_transfer(self, credit_id: int) -> None:
        """
        Pre-transfer hook consulted by the asset ledger before any
        ownership change. Raising refuses the change.
        """
        if self._state is RegistryState.PAUSED:
            raise RegistryPaused("transfer")
        if not self._store.is_transferable(credit_id):
            logger.warning(
                "Transfer of locked credit refused",
                operation="on_before_transfer",
                error_code=TransferLocked.code,
                credit_id=credit_id,
            )
            raise TransferLocked(credit_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @atomic()
    def get(self, credit_id: int) -> CreditRecord:
        return self._store.get(credit_id)

    @atomic()
    def exists(self, credit_id: int) -> bool:
        return self._store.exists(credit_id)

    @atomic()
    def is_transferable(self, credit_id: int) -> bool:
        return self._store.is_transferable(credit_id)

    def descriptor(self, credit_id: int) -> str:
        """Canonical descriptor of the credit's current state."""
        return descriptors.encode(self.get(credit_id))

    def fingerprint_of(self, attributes: AttributesInput) -> Fingerprint:
        if not isinstance(attributes, CreditAttributes):
            attributes = CreditAttributes.from_dict(dict(attributes))
        return derive_from_attributes(attributes)

    @atomic()
    def is_registered(self, attributes: AttributesInput) -> bool:
        """Whether a credit with the same uniqueness key was already issued."""
        return self._index.contains(self.fingerprint_of(attributes))

    @property
    def state(self) -> RegistryState:
        with self._lock:
            return self._state

    @property
    def paused(self) -> bool:
        return self.state is RegistryState.PAUSED

    @property
    def total_issued(self) -> int:
        with self._lock:
            return self._last_id

    @property
    def next_credit_id(self) -> int:
        with self._lock:
            return self._last_id + 1

    @atomic()
    def records(self) -> List[CreditRecord]:
        return list(self._store.records())

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def sink(self) -> EventSink:
        return self._sink

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------

    @property
    def pending_events(self) -> List[Event]:
        """Committed events the sink has not yet accepted."""
        with self._lock:
            return list(self._outbox)

    @atomic()
    def redeliver(self) -> int:
        """Retry delivery of pending events; returns how many remain."""
        self._flush_outbox()
        return len(self._outbox)

    def _emit(self, event: Event) -> None:
        self._outbox.append(event)
        self._flush_outbox()

    def _flush_outbox(self) -> None:
        # Events leave strictly in commit order; a failed delivery holds
        # back every later event until it succeeds.
        while self._outbox:
            event = self._outbox[0]
            try:
                self._sink.emit(event)
            except Exception:
                logger.error(
                    "Event delivery failed; event kept for redelivery",
                    error_code="EVENT_DELIVERY_FAILED",
                    exc_info=True,
                    event_type=event.event_type,
                    pending=len(self._outbox),
                )
                return
            self._outbox.pop(0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_administrator(
        self,
        caller: Any,
        action: str,
        resource_type: str,
        resource_id: Any,
    ) -> None:
        if self._authorizer.is_administrator(caller):
            return
        self._audit.log(caller, action, resource_type, resource_id, "denied")
        logger.warning(
            "Unauthorized caller refused",
            operation=action,
            error_code=Unauthorized.code,
            caller=str(caller),
        )
        raise Unauthorized(caller, action.replace("_", " "))

    def _transition(self, target: RegistryState) -> None:
        InvariantChecker.check_state_transition(self._state, target, VALID_STATE_TRANSITIONS)
        previous = self._state
        self._state = target
        logger.info(
            "Registry state changed",
            operation="transition",
            previous=previous.value,
            current=target.value,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @atomic()
    def statistics(self) -> Dict[str, Any]:
        records = list(self._store.records())
        return {
            "name": self.name,
            "symbol": self.symbol,
            "state": self._state.value,
            "total_issued": self._last_id,
            "verified": sum(1 for r in records if r.verified),
            "transfer_locked": sum(1 for r in records if r.transfer_locked),
            "consumed_keys": len(self._index),
            "pending_events": len(self._outbox),
        }

    @atomic()
    def export(self) -> Dict[str, Any]:
        """Snapshot of every credit with its descriptor and key."""
        credits = []
        for record in self._store.records():
            entry = record.to_dict()
            entry["descriptor"] = descriptors.encode(record)
            entry["fingerprint"] = derive_from_attributes(record.attributes).hex()
            credits.append(entry)

        return {
            "name": self.name,
            "symbol": self.symbol,
            "state": self._state.value,
            "next_credit_id": self._last_id + 1,
            "credits": credits,
            "consumed_keys": sorted(self._index.snapshot()),
        }


def build_registry(
    config: Optional[RegistryConfig] = None,
    ledger: Optional[AssetLedger] = None,
    sink: Optional[EventSink] = None,
    authorizer: Optional[Authorizer] = None,
) -> LifecycleController:
    """Wire a controller from configuration, with in-memory collaborators by default."""
    config = config or get_config()
    section = config.registry

    return LifecycleController(
        authorizer if authorizer is not None else SingleAdministrator(section.administrator.get()),
        ledger if ledger is not None else InMemoryAssetLedger(),
        sink,
        name=section.name.get(),
        symbol=section.symbol.get(),
        state=RegistryState.PAUSED if section.start_paused.get() else RegistryState.ACTIVE,
        max_species_length=section.max_species_length.get(),
    )

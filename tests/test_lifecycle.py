"""
Lifecycle controller tests.

Issuance gates and atomicity, administrator operations, the registry
pause state machine, the pre-transfer hook, event emission and
concurrent issuance.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from carbonreg.auth import AdministratorSet, SingleAdministrator
from carbonreg.config import get_config_manager
from carbonreg.events import (
    CreditIssued,
    EventSink,
    Paused,
    RegistryEventSink,
    Unpaused,
    VerificationChanged,
)
from carbonreg.fingerprint import derive_from_attributes
from carbonreg.hardening import (
    DuplicateCredit,
    InvalidRange,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    RegistryPaused,
    TransferLocked,
    Unauthorized,
    ValidationError,
    ValidationErrors,
)
from carbonreg.ledger import AssetLedger, InMemoryAssetLedger
from carbonreg.lifecycle import LifecycleController, RegistryState, build_registry
from carbonreg.store import CreditCategory


class FailingLedger(AssetLedger):
    """Ledger whose mint always fails with a non-registry exception."""

    def __init__(self):
        self.calls = 0

    def mint(self, owner, credit_id):
        self.calls += 1
        raise RuntimeError("ledger offline")

    def exists(self, credit_id):
        return False


class FlakySink(EventSink):
    """Sink that refuses delivery while ``down`` is set."""

    def __init__(self):
        self.down = False
        self.delivered = []

    def emit(self, event):
        if self.down:
            raise ConnectionError("sink unavailable")
        self.delivered.append(event)


def _events(sink, event_type=None):
    records = sink.store.read_all(max_count=sink.store.total_events)
    return [r.event for r in records if event_type is None or isinstance(r.event, event_type)]


# =============================================================================
# REFERENCE SCENARIO
# =============================================================================

class TestReferenceScenario:
    """Issue, duplicate, lock and verify one Fixation credit end to end."""

    def test_scenario(self, registry, make_attributes, admin):
        credit_id = registry.issue("alice", make_attributes())
        assert credit_id == 1

        with pytest.raises(DuplicateCredit):
            registry.issue("alice", make_attributes(co2_equivalent=999))

        registry.lock_transfer(credit_id, caller=admin)
        assert registry.is_transferable(credit_id) is False

        registry.set_verification(credit_id, True, caller=admin)
        assert registry.descriptor(credit_id).startswith(
            "true~Fixation~-122000000~-122000000~37000000~1000~2000~50"
        )


# =============================================================================
# ISSUANCE
# =============================================================================

class TestIssue:

    def test_identifiers_start_at_one_and_increase(self, registry, make_attributes):
        ids = [registry.issue("alice", make_attributes(start_date=s)) for s in range(5)]
        assert ids == [1, 2, 3, 4, 5]
        assert registry.total_issued == 5
        assert registry.next_credit_id == 6

    def test_mints_to_owner(self, registry, ledger, attributes):
        credit_id = registry.issue("alice", attributes)
        assert ledger.owner_of(credit_id) == "alice"
        assert ledger.balance_of("alice") == 1

    def test_new_record_flags(self, registry, attributes):
        record = registry.get(registry.issue("alice", attributes))
        assert record.verified is False
        assert record.transfer_locked is False
        assert record.attributes == attributes

    def test_accepts_mapping(self, registry):
        credit_id = registry.issue("alice", {
            "category": "ReducedEmission",
            "longitude": 10,
            "latitude": 20,
            "start_date": 1,
            "end_date": 2,
            "co2_equivalent": 3,
        })
        assert registry.get(credit_id).attributes.category is CreditCategory.REDUCED_EMISSION

    @pytest.mark.parametrize("start, end", [(2000, 2000), (2001, 2000)])
    def test_invalid_range(self, registry, make_attributes, start, end):
        with pytest.raises(InvalidRange):
            registry.issue("alice", make_attributes(start_date=start, end_date=end))
        assert registry.total_issued == 0

    def test_duplicate_regardless_of_non_key_fields(self, registry, make_attributes):
        registry.issue("alice", make_attributes())
        with pytest.raises(DuplicateCredit) as exc:
            registry.issue("bob", make_attributes(
                co2_equivalent=1, species="Pinus", age=9, area=9, volume=9,
            ))
        assert exc.value.fingerprint == derive_from_attributes(make_attributes()).hex()

    def test_distinct_keys_all_issue(self, registry, make_attributes):
        variants = [
            make_attributes(),
            make_attributes(category=CreditCategory.OTHER),
            make_attributes(longitude=1),
            make_attributes(latitude=1),
            make_attributes(start_date=1),
            make_attributes(end_date=3000),
        ]
        assert [registry.issue("alice", v) for v in variants] == [1, 2, 3, 4, 5, 6]

    def test_invalid_attributes(self, registry, make_attributes):
        with pytest.raises(ValidationErrors) as exc:
            registry.issue("alice", make_attributes(co2_equivalent=-5))
        assert exc.value.code == "INVALID_ATTRIBUTES"
        assert registry.total_issued == 0

    def test_missing_attribute_in_mapping(self, registry):
        with pytest.raises(ValidationError):
            registry.issue("alice", {"category": "Other"})

    def test_species_limit_applies(self, ledger, make_attributes):
        registry = LifecycleController(SingleAdministrator("a"), ledger, max_species_length=4)
        with pytest.raises(ValidationErrors):
            registry.issue("alice", make_attributes(species="Quercus"))

    def test_paused_is_checked_first(self, registry, make_attributes, admin):
        registry.pause(admin)
        with pytest.raises(RegistryPaused):
            registry.issue("alice", make_attributes(start_date=5, end_date=1))

    def test_failed_attempts_do_not_consume_identifiers(self, registry, make_attributes):
        registry.issue("alice", make_attributes())
        with pytest.raises(DuplicateCredit):
            registry.issue("alice", make_attributes())
        with pytest.raises(InvalidRange):
            registry.issue("alice", make_attributes(start_date=9, end_date=9))
        assert registry.issue("alice", make_attributes(start_date=1)) == 2


class TestIssueAtomicity:
    """A refused mint leaves the registry exactly as it was."""

    def test_ledger_failure_changes_nothing(self, make_attributes):
        ledger = FailingLedger()
        registry = LifecycleController(SingleAdministrator("a"), ledger)

        with pytest.raises(LedgerError) as exc:
            registry.issue("alice", make_attributes())
        assert isinstance(exc.value.__cause__, RuntimeError)

        assert ledger.calls == 1
        assert registry.total_issued == 0
        assert not registry.exists(1)
        assert not registry.is_registered(make_attributes())
        assert registry.pending_events == []

    def test_key_stays_free_after_ledger_refusal(self, registry, ledger, make_attributes):
        with pytest.raises(LedgerError):
            registry.issue("", make_attributes())
        assert registry.issue("alice", make_attributes()) == 1
        assert len(ledger) == 1

    def test_ledger_registry_errors_propagate_unchanged(self, make_attributes):
        class ClosedLedger(FailingLedger):
            def mint(self, owner, credit_id):
                raise LedgerError("closed")

        registry = LifecycleController(SingleAdministrator("a"), ClosedLedger())
        with pytest.raises(LedgerError, match="closed"):
            registry.issue("alice", make_attributes())


# =============================================================================
# ADMINISTRATOR OPERATIONS
# =============================================================================

class TestVerification:

    def test_last_call_wins(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        for status in (True, False, True, True, False):
            registry.set_verification(credit_id, status, caller=admin)
        assert registry.get(credit_id).verified is False

    def test_emits_every_call(self, registry, sink, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.set_verification(credit_id, True, caller=admin)
        registry.set_verification(credit_id, True, caller=admin)
        events = _events(sink, VerificationChanged)
        assert [(e.credit_id, e.status) for e in events] == [(1, True), (1, True)]

    def test_unauthorized(self, registry, attributes):
        credit_id = registry.issue("alice", attributes)
        with pytest.raises(Unauthorized):
            registry.set_verification(credit_id, True, caller="alice")
        assert registry.get(credit_id).verified is False

    def test_authorization_checked_before_existence(self, registry):
        with pytest.raises(Unauthorized):
            registry.set_verification(42, True, caller="mallory")

    def test_not_found(self, registry, admin):
        with pytest.raises(NotFound):
            registry.set_verification(42, True, caller=admin)

    @pytest.mark.parametrize("status", ["false", "true", 0, 1, None])
    def test_non_bool_status_rejected(self, registry, sink, attributes, admin, status):
        credit_id = registry.issue("alice", attributes)
        registry.set_verification(credit_id, True, caller=admin)
        with pytest.raises(ValidationError) as exc:
            registry.set_verification(credit_id, status, caller=admin)
        assert exc.value.field == "status"
        assert registry.get(credit_id).verified is True
        assert len(_events(sink, VerificationChanged)) == 1


class TestTransferLock:

    def test_lock(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        assert registry.is_transferable(credit_id)
        registry.lock_transfer(credit_id, caller=admin)
        registry.lock_transfer(credit_id, caller=admin)
        assert not registry.is_transferable(credit_id)

    def test_lock_survives_verification_changes(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.lock_transfer(credit_id, caller=admin)
        registry.set_verification(credit_id, True, caller=admin)
        registry.set_verification(credit_id, False, caller=admin)
        assert registry.get(credit_id).transfer_locked

    def test_lock_does_not_change_descriptor(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        before = registry.descriptor(credit_id)
        registry.lock_transfer(credit_id, caller=admin)
        assert registry.descriptor(credit_id) == before

    def test_unauthorized(self, registry, attributes):
        credit_id = registry.issue("alice", attributes)
        with pytest.raises(Unauthorized):
            registry.lock_transfer(credit_id, caller="alice")
        assert registry.is_transferable(credit_id)

    def test_not_found(self, registry, admin):
        with pytest.raises(NotFound):
            registry.lock_transfer(7, caller=admin)
        with pytest.raises(NotFound):
            registry.is_transferable(7)


class TestPause:

    def test_pause_and_unpause(self, registry, sink, admin):
        assert registry.state is RegistryState.ACTIVE
        registry.pause(admin)
        assert registry.paused
        registry.unpause(admin)
        assert not registry.paused

        events = _events(sink)
        assert [type(e) for e in events] == [Paused, Unpaused]
        assert events[0].account == admin
        assert events[0].stream_id == "registry"

    def test_repeated_transitions_rejected(self, registry, admin):
        with pytest.raises(InvalidStateTransition):
            registry.unpause(admin)
        registry.pause(admin)
        with pytest.raises(InvalidStateTransition):
            registry.pause(admin)

    def test_unauthorized(self, registry):
        with pytest.raises(Unauthorized):
            registry.pause("alice")
        assert not registry.paused

    def test_admin_operations_allowed_while_paused(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.pause(admin)
        registry.set_verification(credit_id, True, caller=admin)
        registry.lock_transfer(credit_id, caller=admin)
        assert registry.get(credit_id).verified

    def test_start_paused(self, ledger):
        registry = LifecycleController(SingleAdministrator("a"), ledger, state=RegistryState.PAUSED)
        assert registry.paused


# =============================================================================
# TRANSFER HOOK
# =============================================================================

class TestTransferHook:

    def test_transfer_allowed(self, registry, ledger, attributes):
        credit_id = registry.issue("alice", attributes)
        ledger.transfer("alice", "bob", credit_id)
        assert ledger.owner_of(credit_id) == "bob"

    def test_locked_credit_cannot_move(self, registry, ledger, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.lock_transfer(credit_id, caller=admin)
        with pytest.raises(TransferLocked):
            ledger.transfer("alice", "bob", credit_id)
        with pytest.raises(TransferLocked):
            ledger.burn("alice", credit_id)
        assert ledger.owner_of(credit_id) == "alice"

    def test_paused_registry_blocks_transfers(self, registry, ledger, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.pause(admin)
        with pytest.raises(RegistryPaused):
            ledger.transfer("alice", "bob", credit_id)
        registry.unpause(admin)
        ledger.transfer("alice", "bob", credit_id)

    def test_pause_takes_precedence_over_lock(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.lock_transfer(credit_id, caller=admin)
        registry.pause(admin)
        with pytest.raises(RegistryPaused):
            registry.on_before_transfer(credit_id)

    def test_unknown_credit(self, registry):
        with pytest.raises(NotFound):
            registry.on_before_transfer(99)

    def test_key_stays_consumed_after_burn(self, registry, ledger, attributes):
        credit_id = registry.issue("alice", attributes)
        ledger.burn("alice", credit_id)
        assert not ledger.exists(credit_id)
        assert registry.exists(credit_id)
        with pytest.raises(DuplicateCredit):
            registry.issue("alice", attributes)


# =============================================================================
# EVENTS
# =============================================================================

class TestEvents:

    def test_credit_issued_payload(self, registry, sink, attributes):
        registry.issue("alice", attributes)
        (event,) = _events(sink, CreditIssued)
        assert event.payload() == {
            "credit_id": 1,
            "longitude": -122000000,
            "latitude": 37000000,
            "start_date": 1000,
            "end_date": 2000,
            "co2_equivalent": 50,
        }
        assert sink.store.read_stream("credit-1") == [event]

    def test_events_follow_commit_order(self, registry, sink, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.set_verification(credit_id, True, caller=admin)
        registry.set_verification(credit_id, False, caller=admin)
        stream = sink.store.read_stream("credit-1")
        assert [e.event_type for e in stream] == ["CreditIssued", "VerificationChanged", "VerificationChanged"]
        assert [e.status for e in stream[1:]] == [True, False]

    def test_failed_operations_emit_nothing(self, registry, sink, attributes):
        registry.issue("alice", attributes)
        with pytest.raises(DuplicateCredit):
            registry.issue("alice", attributes)
        with pytest.raises(Unauthorized):
            registry.pause("alice")
        assert sink.store.total_events == 1

    def test_failed_delivery_is_kept_and_redelivered(self, ledger, make_attributes, admin):
        sink = FlakySink()
        registry = LifecycleController(SingleAdministrator(admin), ledger, sink)

        sink.down = True
        first = registry.issue("alice", make_attributes())
        second = registry.issue("alice", make_attributes(start_date=1))
        assert (first, second) == (1, 2)
        assert [e.credit_id for e in registry.pending_events] == [1, 2]
        assert registry.redeliver() == 2

        sink.down = False
        assert registry.redeliver() == 0
        assert [e.credit_id for e in sink.delivered] == [1, 2]

    def test_pending_events_flush_before_new_ones(self, ledger, make_attributes, admin):
        sink = FlakySink()
        registry = LifecycleController(SingleAdministrator(admin), ledger, sink)

        sink.down = True
        registry.issue("alice", make_attributes())
        sink.down = False
        registry.set_verification(1, True, caller=admin)

        assert [e.event_type for e in sink.delivered] == ["CreditIssued", "VerificationChanged"]
        assert registry.pending_events == []

    def test_redelivered_events_share_digest(self, ledger, make_attributes, admin):
        sink = FlakySink()
        registry = LifecycleController(SingleAdministrator(admin), ledger, sink)
        sink.down = True
        registry.issue("alice", make_attributes())
        pending = registry.pending_events[0]
        sink.down = False
        registry.redeliver()
        assert sink.delivered[0].digest() == pending.digest()


# =============================================================================
# AUDIT, READS AND REPORTING
# =============================================================================

class TestAuditTrail:

    def test_records_success_and_denial(self, registry, attributes, admin):
        credit_id = registry.issue("alice", attributes)
        registry.set_verification(credit_id, True, caller=admin)
        with pytest.raises(Unauthorized):
            registry.lock_transfer(credit_id, caller="mallory")

        entries = registry.audit.entries
        assert [(e.action, e.outcome, e.actor) for e in entries] == [
            ("set_verification", "success", admin),
            ("lock_transfer", "denied", "mallory"),
        ]
        assert registry.audit.verify_chain()


class TestReads:

    def test_is_registered(self, registry, make_attributes):
        assert not registry.is_registered(make_attributes())
        registry.issue("alice", make_attributes())
        assert registry.is_registered(make_attributes(co2_equivalent=7))
        assert registry.fingerprint_of(make_attributes()) == derive_from_attributes(make_attributes())

    def test_statistics(self, registry, make_attributes, admin):
        registry.issue("alice", make_attributes())
        registry.issue("alice", make_attributes(start_date=1))
        registry.set_verification(1, True, caller=admin)
        registry.lock_transfer(2, caller=admin)

        stats = registry.statistics()
        assert stats["total_issued"] == 2
        assert stats["verified"] == 1
        assert stats["transfer_locked"] == 1
        assert stats["consumed_keys"] == 2
        assert stats["state"] == "active"

    def test_export(self, registry, attributes):
        registry.issue("alice", attributes)
        exported = registry.export()
        assert exported["next_credit_id"] == 2
        (credit,) = exported["credits"]
        assert credit["descriptor"] == "false~Fixation~-122000000~-122000000~37000000~1000~2000~50"
        assert exported["consumed_keys"] == [credit["fingerprint"]]

    def test_get_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.get(1)
        with pytest.raises(NotFound):
            registry.descriptor(1)


class TestAuthorizers:

    def test_administrator_set(self, ledger, attributes):
        registry = LifecycleController(AdministratorSet({"ops", "audit"}), ledger)
        credit_id = registry.issue("alice", attributes)
        registry.set_verification(credit_id, True, caller="audit")
        registry.lock_transfer(credit_id, caller="ops")
        with pytest.raises(Unauthorized):
            registry.pause("alice")

    def test_transferred_administration(self, ledger, attributes):
        auth = SingleAdministrator("old")
        registry = LifecycleController(auth, ledger)
        credit_id = registry.issue("alice", attributes)
        auth.transfer_administration("new", caller="old")
        with pytest.raises(Unauthorized):
            registry.lock_transfer(credit_id, caller="old")
        registry.lock_transfer(credit_id, caller="new")


class TestBuildRegistry:

    def test_defaults(self):
        registry = build_registry()
        assert registry.name == "Carbon Credit"
        assert registry.symbol == "CCR"
        assert not registry.paused
        assert isinstance(registry.sink, RegistryEventSink)
        registry.pause("admin")

    def test_from_configuration(self, monkeypatch):
        manager = get_config_manager()
        manager.set("registry.administrator", "ops")
        manager.set("registry.symbol", "TCO2")
        monkeypatch.setenv("CARBONREG_START_PAUSED", "true")

        ledger = InMemoryAssetLedger()
        registry = build_registry(ledger=ledger)
        assert registry.symbol == "TCO2"
        assert registry.paused
        registry.unpause("ops")


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrency:

    def test_same_key_issues_exactly_once(self, registry, make_attributes):
        def attempt(_):
            try:
                return registry.issue("alice", make_attributes())
            except DuplicateCredit:
                return None

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(64)))

        assert [r for r in results if r is not None] == [1]
        assert registry.total_issued == 1

    def test_identifiers_unique_under_contention(self, registry, make_attributes):
        with ThreadPoolExecutor(max_workers=16) as pool:
            ids = list(pool.map(
                lambda i: registry.issue(f"owner-{i % 4}", make_attributes(start_date=i)),
                range(200),
            ))

        assert sorted(ids) == list(range(1, 201))
        assert registry.total_issued == 200

    def test_transfers_and_locks_do_not_deadlock(self, registry, ledger, make_attributes, admin):
        """Ledger transfers call back into the registry while issuance calls into the ledger."""
        for i in range(20):
            registry.issue("alice", make_attributes(start_date=i))

        errors = []

        def mover():
            for credit_id in range(1, 21):
                try:
                    ledger.transfer("alice", "bob", credit_id)
                except TransferLocked:
                    pass
                except Exception as e:
                    errors.append(e)

        def issuer():
            for i in range(20, 60):
                registry.issue("carol", make_attributes(start_date=i))

        def locker():
            for credit_id in range(1, 21, 2):
                registry.lock_transfer(credit_id, caller=admin)

        threads = [threading.Thread(target=t) for t in (mover, issuer, locker)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert not any(t.is_alive() for t in threads)
        assert errors == []
        assert registry.total_issued == 60
        for credit_id in range(1, 21):
            record = registry.get(credit_id)
            if ledger.owner_of(credit_id) == "bob":
                continue
            assert record.transfer_locked

    @pytest.mark.slow
    def test_heavy_contention(self, registry, make_attributes):
        with ThreadPoolExecutor(max_workers=32) as pool:
            ids = list(pool.map(
                lambda i: registry.issue("alice", make_attributes(start_date=i % 500)),
                range(500),
            ))
        assert sorted(ids) == list(range(1, 501))

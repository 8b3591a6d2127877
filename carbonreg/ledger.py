"""
Asset Ledger Collaborators

The asset ledger owns the association between a credit identifier and its
holder. The registry only ever asks it to mint a freshly issued identifier
and answers its pre-transfer hook; it never initiates a transfer itself.

    ┌──────────────────────┐   mint(owner, id)    ┌──────────────────────┐
    │  LifecycleController │ ───────────────────► │     AssetLedger      │
    │                      │ ◄─────────────────── │                      │
    └──────────────────────┘  on_before_transfer  └──────────────────────┘

``InMemoryAssetLedger`` is the reference ledger used by the CLI and tests.
Production deployments substitute their own ledger behind ``AssetLedger``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextlib
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, ContextManager, Dict, List, Optional

from carbonreg.hardening import LedgerError, NotFound
from carbonreg.observability import RegistryLayer, get_logger

logger = get_logger("ledger", RegistryLayer.LEDGER)

TransferHook = Callable[[int], None]


class AssetLedger(ABC):
    """Ownership capability the registry calls into."""

    @abstractmethod
    def mint(self, owner: Any, credit_id: int) -> None:
        """Create the asset for ``credit_id`` held by ``owner``."""

    @abstractmethod
    def exists(self, credit_id: int) -> bool:
        """Whether an asset currently exists for ``credit_id``."""


class InMemoryAssetLedger(AssetLedger):
    """
    Dictionary-backed ledger.

    Every ownership change (transfer or burn) first consults the installed
    transfer hook; if the hook raises, the change is not applied.

    Example:
        ledger = InMemoryAssetLedger()
        registry = LifecycleController(authorizer, ledger)   # installs hook
        credit_id = registry.issue("alice", attributes)
        ledger.transfer("alice", "bob", credit_id)
    """

    def __init__(self, transfer_hook: Optional[TransferHook] = None):
        self._owners: Dict[int, Any] = {}
        self._hook = transfer_hook
        self._guard: Optional[ContextManager] = None
        self._lock = threading.RLock()

    def set_transfer_hook(
        self,
        hook: Optional[TransferHook],
        guard: Optional[ContextManager] = None,
    ) -> None:
        """
        Install the pre-transfer hook.

        ``guard`` is a lock owned by the hook's provider. Transfers and burns
        hold it around the hook call and the ownership change, and always take
        it before the ledger's own lock, so the provider may call ``mint``
        while holding it.
        """
        with self._lock:
            self._hook = hook
            self._guard = guard

    def mint(self, owner: Any, credit_id: int) -> None:
        if owner is None or owner == "":
            raise LedgerError("Cannot mint to an empty owner")
        with self._lock:
            if credit_id in self._owners:
                raise LedgerError(f"Asset {credit_id} already minted")
            self._owners[credit_id] = owner
        logger.debug("Asset minted", operation="mint", credit_id=credit_id, owner=str(owner))

    def exists(self, credit_id: int) -> bool:
        with self._lock:
            return credit_id in self._owners

    def owner_of(self, credit_id: int) -> Any:
        with self._lock:
            if credit_id not in self._owners:
                raise NotFound(credit_id)
            return self._owners[credit_id]

    def balance_of(self, owner: Any) -> int:
        with self._lock:
            return sum(1 for holder in self._owners.values() if holder == owner)

    def tokens_of(self, owner: Any) -> List[int]:
        with self._lock:
            return sorted(cid for cid, holder in self._owners.items() if holder == owner)

    def transfer(self, sender: Any, recipient: Any, credit_id: int) -> None:
        """Move a credit from its holder to ``recipient``."""
        if recipient is None or recipient == "":
            raise LedgerError("Cannot transfer to an empty recipient")
        with self._guarded():
            holder = self.owner_of(credit_id)
            if holder != sender:
                raise LedgerError(f"{sender!r} does not hold asset {credit_id}")
            self._run_hook(credit_id)
            self._owners[credit_id] = recipient
        logger.info(
            "Asset transferred",
            operation="transfer",
            credit_id=credit_id,
            sender=str(sender),
            recipient=str(recipient),
        )

    def burn(self, holder: Any, credit_id: int) -> None:
        """
        Destroy the asset for ``credit_id``.

        The registry keeps the credit record and its consumed uniqueness key;
        only the ownership entry disappears.
        """
        with self._guarded():
            current = self.owner_of(credit_id)
            if current != holder:
                raise LedgerError(f"{holder!r} does not hold asset {credit_id}")
            self._run_hook(credit_id)
            del self._owners[credit_id]
        logger.info("Asset burned", operation="burn", credit_id=credit_id, holder=str(holder))

    @contextlib.contextmanager
    def _guarded(self):
        guard = self._guard
        with guard if guard is not None else contextlib.nullcontext():
            with self._lock:
                yield

    def _run_hook(self, credit_id: int) -> None:
        if self._hook is not None:
            self._hook(credit_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)

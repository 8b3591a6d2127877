"""Administrator authorization for gated registry operations."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, FrozenSet, Iterable

from carbonreg.hardening import Unauthorized, ValidationError


class Authorizer(ABC):
    """Decides whether a caller may perform administrator-only operations."""

    @abstractmethod
    def is_administrator(self, caller: Any) -> bool:
        pass


class SingleAdministrator(Authorizer):
    """
    One administrator, transferable by the current administrator.

    Example:
        auth = SingleAdministrator("registry-admin")
        auth.is_administrator("registry-admin")   # True
        auth.transfer_administration("ops", caller="registry-admin")
        auth.is_administrator("registry-admin")   # False
    """

    def __init__(self, administrator: Any):
        if administrator is None or administrator == "":
            raise ValidationError("administrator", "Administrator cannot be empty", administrator)
        self._administrator = administrator
        self._lock = threading.Lock()

    @property
    def administrator(self) -> Any:
        with self._lock:
            return self._administrator

    def is_administrator(self, caller: Any) -> bool:
        with self._lock:
            return caller == self._administrator

    def transfer_administration(self, new_administrator: Any, caller: Any) -> None:
        if new_administrator is None or new_administrator == "":
            raise ValidationError("administrator", "Administrator cannot be empty", new_administrator)
        with self._lock:
            if caller != self._administrator:
                raise Unauthorized(caller, "transfer administration")
            self._administrator = new_administrator


class AdministratorSet(Authorizer):
    """Fixed allowlist of administrators."""

    def __init__(self, administrators: Iterable[Any]):
        self._administrators: FrozenSet[Any] = frozenset(administrators)

    def is_administrator(self, caller: Any) -> bool:
        return caller in self._administrators

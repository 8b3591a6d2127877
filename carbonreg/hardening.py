"""
Carbon Credit Registry Validation and Hardening Module

Error taxonomy, input validation, and invariant enforcement shared by every
layer of the registry:

1. Registry error types with stable error codes
2. Attribute validation with sanitization
3. Integer range checks for the fixed-width key encoding
4. State machine invariant enforcement

Security Model:
    - All issuance inputs are untrusted until validated
    - Every mutating operation is all-or-nothing
    - Errors are raised synchronously and never retried internally

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Set


# =============================================================================
# REGISTRY ERROR TYPES
# =============================================================================

class RegistryError(Exception):
    """Base exception for every error the registry raises."""

    code = "REGISTRY_ERROR"


class InvalidRange(RegistryError):
    """The credit's time window is empty or inverted."""

    code = "INVALID_RANGE"

    def __init__(self, start_date: int, end_date: int):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"start_date must be before end_date (got {start_date} >= {end_date})"
        )


class DuplicateCredit(RegistryError):
    """A credit with the same uniqueness key was already issued."""

    code = "DUPLICATE_CREDIT"

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"Credit already issued for key {fingerprint}")


class NotFound(RegistryError):
    """No credit exists for the identifier."""

    code = "NOT_FOUND"

    def __init__(self, credit_id: int):
        self.credit_id = credit_id
        super().__init__(f"Credit {credit_id} not found")


class AlreadyExists(RegistryError):
    """A credit with the identifier is already stored."""

    code = "ALREADY_EXISTS"

    def __init__(self, credit_id: int):
        self.credit_id = credit_id
        super().__init__(f"Credit {credit_id} already exists")


class Unauthorized(RegistryError):
    """Caller is not the registry administrator."""

    code = "UNAUTHORIZED"

    def __init__(self, caller: Any, action: str):
        self.caller = caller
        self.action = action
        super().__init__(f"Caller {caller!r} is not authorized to {action}")


class RegistryPaused(RegistryError):
    """Operation attempted while the registry is paused."""

    code = "REGISTRY_PAUSED"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Registry is paused: cannot {action}")


class TransferLocked(RegistryError):
    """Transfer attempted on a transfer-locked credit."""

    code = "TRANSFER_LOCKED"

    def __init__(self, credit_id: int):
        self.credit_id = credit_id
        super().__init__(f"Credit {credit_id} is locked for transfer")


class InvalidStateTransition(RegistryError):
    """Registry lifecycle transition not permitted from the current state."""

    code = "INVALID_STATE_TRANSITION"


class LedgerError(RegistryError):
    """The asset ledger refused or failed an operation."""

    code = "LEDGER_ERROR"


class ValidationError(RegistryError):
    """A single attribute failed validation."""

    code = "INVALID_ATTRIBUTES"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(RegistryError):
    """Collection of validation errors."""

    code = "INVALID_ATTRIBUTES"

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Key fields are encoded as 256-bit words
    WORD_BITS = 256
    INT256_MIN = -(1 << (WORD_BITS - 1))
    INT256_MAX = (1 << (WORD_BITS - 1)) - 1
    UINT256_MAX = (1 << WORD_BITS) - 1

    MAX_SPECIES_LENGTH = 256

    @classmethod
    def validate_int(
        cls,
        value: Any,
        field_name: str,
        signed: bool = False,
    ) -> ValidationResult:
        """Validate an integer that must fit a signed or unsigned 256-bit word."""
        # bool is an int subclass; True must not be accepted as 1
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])

        low, high = (cls.INT256_MIN, cls.INT256_MAX) if signed else (0, cls.UINT256_MAX)
        kind = "int256" if signed else "uint256"
        if value < low:
            return ValidationResult.failure([
                ValidationError(field_name, f"Below minimum for {kind}", value)
            ])
        if value > high:
            return ValidationResult.failure([
                ValidationError(field_name, f"Exceeds maximum for {kind}", value)
            ])

        return ValidationResult.success(value)

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate a free-text value."""
        if max_length is None:
            max_length = cls.MAX_SPECIES_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_key_fields(
        cls,
        longitude: Any,
        latitude: Any,
        start_date: Any,
        end_date: Any,
    ) -> ValidationResult:
        """Validate the integer fields that take part in the uniqueness key."""
        errors: List[ValidationError] = []
        for result in (
            cls.validate_int(longitude, "longitude", signed=True),
            cls.validate_int(latitude, "latitude", signed=True),
            cls.validate_int(start_date, "start_date"),
            cls.validate_int(end_date, "end_date"),
        ):
            errors.extend(result.errors)

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success()


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces registry invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvalidStateTransition(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )


# =============================================================================
# DECORATOR UTILITIES
# =============================================================================

def atomic(lock_attr: str = "_lock") -> Callable:
    """Decorator that runs a method while holding the instance's lock."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            lock: threading.RLock = getattr(self, lock_attr)
            with lock:
                return func(self, *args, **kwargs)
        return wrapper
    return decorator

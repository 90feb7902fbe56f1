"""
METATX Hardening

Everything that decides whether an input or a state change is acceptable:
EVM-typed value validators, the typed errors a dispatch can end in, address
comparison, and the state-machine and accounting invariants the ledger and
dispatcher assert.

Callers never receive a bare boolean for an authorization failure. Each
rejection is a DispatchError subclass with a stable ``code``.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from eth_utils import is_address, to_checksum_address


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class SecurityViolation(Exception):
    """Security constraint violated."""
    pass


class InvariantViolation(Exception):
    """State machine or ledger invariant violated."""
    pass


class ExecutionReverted(Exception):
    """An action target rejected a call on its own terms."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# =============================================================================
# AUTHORIZATION ERROR TYPES
# =============================================================================

class DispatchError(SecurityViolation):
    """
    Base class for rejected or failed dispatches.

    Every subclass carries a stable ``code`` so relayers can branch on the
    failure without parsing messages.
    """
    code = "dispatch_error"


class InvalidSignature(DispatchError):
    """Signature is malformed or does not recover to any identity."""
    code = "invalid_signature"


class SignerMismatch(DispatchError):
    """Recovered identity differs from the signer named in the message."""
    code = "signer_mismatch"

    def __init__(self, recovered: str, claimed: str):
        self.recovered = recovered
        self.claimed = claimed
        super().__init__(f"Signer mismatch: recovered {recovered}, message names {claimed}")


class ReplayOrInvalidNonce(DispatchError):
    """Presented nonce is not the next expected value for the principal."""
    code = "replay_or_invalid_nonce"

    def __init__(self, principal: str, expected: int, presented: Any):
        self.principal = principal
        self.expected = expected
        self.presented = presented
        super().__init__(
            f"Invalid nonce for {principal}: expected {expected}, got {presented!r}"
        )


class ActionFailed(DispatchError):
    """The action target reverted; ``reason`` is its message verbatim."""
    code = "action_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


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

    def unwrap(self) -> Any:
        """Return the sanitized value or raise ValidationErrors."""
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, field_name: str, message: str, value: Any = None) -> 'ValidationResult':
        return cls(is_valid=False, errors=[ValidationError(field_name, message, value)])


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Validators for EVM-typed values."""

    HEX_PATTERN = re.compile(r'^(0x)?([0-9a-fA-F]{2})*$')

    MAX_STRING_LENGTH = 65536
    MAX_BYTES_LENGTH = 131072

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate a text value. Content is signed verbatim, so nothing is stripped."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        if not isinstance(value, str):
            return ValidationResult.failure(
                field_name, f"Expected string, got {type(value).__name__}", value
            )
        if len(value) > max_length:
            return ValidationResult.failure(field_name, f"Too long (max {max_length} chars)", value)
        return ValidationResult.success(value)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate a 20-byte account address and return its checksum form."""
        if isinstance(value, (bytes, bytearray)) and len(value) == 20:
            return ValidationResult.success(to_checksum_address(bytes(value)))
        if not isinstance(value, str) or not is_address(value):
            return ValidationResult.failure(
                field_name, "Must be a valid address (0x + 40 hex)", value
            )
        return ValidationResult.success(to_checksum_address(value))

    @classmethod
    def validate_uint(cls, value: Any, field_name: str, bits: int = 256) -> ValidationResult:
        """Validate an unsigned integer that fits in ``bits`` bits."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure(
                field_name, f"Expected integer, got {type(value).__name__}", value
            )
        if value < 0:
            return ValidationResult.failure(field_name, "Must be non-negative", value)
        if value >= 2 ** bits:
            return ValidationResult.failure(field_name, f"Exceeds uint{bits} range", value)
        return ValidationResult.success(value)

    @classmethod
    def validate_int(cls, value: Any, field_name: str, bits: int = 256) -> ValidationResult:
        """Validate a two's-complement signed integer of ``bits`` bits."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure(
                field_name, f"Expected integer, got {type(value).__name__}", value
            )
        bound = 2 ** (bits - 1)
        if not -bound <= value < bound:
            return ValidationResult.failure(field_name, f"Exceeds int{bits} range", value)
        return ValidationResult.success(value)

    @classmethod
    def validate_bool(cls, value: Any, field_name: str) -> ValidationResult:
        if not isinstance(value, bool):
            return ValidationResult.failure(
                field_name, f"Expected bool, got {type(value).__name__}", value
            )
        return ValidationResult.success(value)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        exact_length: Optional[int] = None,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate raw bytes, accepting ``0x``-prefixed hex strings."""
        max_length = max_length or cls.MAX_BYTES_LENGTH

        if isinstance(value, str):
            if not cls.HEX_PATTERN.match(value):
                return ValidationResult.failure(field_name, "Invalid hex string", value)
            value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
        elif isinstance(value, bytearray):
            value = bytes(value)

        if not isinstance(value, bytes):
            return ValidationResult.failure(
                field_name, f"Expected bytes, got {type(value).__name__}", value
            )
        if exact_length is not None and len(value) != exact_length:
            return ValidationResult.failure(
                field_name, f"Expected exactly {exact_length} bytes, got {len(value)}", value
            )
        if len(value) > max_length:
            return ValidationResult.failure(field_name, f"Too long (max {max_length} bytes)", value)
        return ValidationResult.success(value)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Comparison helpers that do not leak timing."""

    @staticmethod
    def same_address(a: str, b: str) -> bool:
        """Constant-time address equality, insensitive to checksum casing."""
        return hmac.compare_digest(a.lower().encode(), b.lower().encode())


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine and accounting invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: int, new_value: int) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_balance_sufficient(available: int, required: int, field_name: str = "balance") -> None:
        """Ensure sufficient balance for operation."""
        if available < required:
            raise InvariantViolation(
                f"Insufficient {field_name}: have {available}, need {required}"
            )

"""
METATX Nonce Registry

Per-principal strictly monotonic counters.

A principal's counter starts at 0 and moves only through ``consume``, which
accepts exactly the current value and advances it by one in a single
compare-and-increment. Strict equality (rather than "greater than") means no
two authorizations carrying the same nonce can both succeed, which closes both
replay and out-of-order execution with one rule.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List

from tools.metatx.hardening import (
    InvariantChecker,
    ReplayOrInvalidNonce,
    Validators,
)
from tools.metatx.observability import Layer, get_logger

logger = get_logger("registry", Layer.NONCE)


class NonceRegistry:
    """
    Keyed store of nonce counters, one per principal address.

    All mutation goes through ``consume``. ``snapshot``/``restore`` exist only
    so an enclosing ledger transaction can revert as one unit.
    """

    def __init__(self):
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(principal: str) -> str:
        return Validators.validate_address(principal, "principal").unwrap()

    def current_nonce(self, principal: str) -> int:
        """The next nonce ``principal`` must present (0 if never seen)."""
        key = self._key(principal)
        with self._lock:
            return self._counters.get(key, 0)

    def consume(self, principal: str, presented: Any) -> int:
        """
        Accept ``presented`` if it equals the current nonce and advance.

        Returns the consumed nonce. Raises ReplayOrInvalidNonce otherwise,
        including for non-integer or negative values.
        """
        key = self._key(principal)
        with self._lock:
            expected = self._counters.get(key, 0)
            if isinstance(presented, bool) or not isinstance(presented, int) or presented != expected:
                logger.warning(
                    "Nonce rejected",
                    error_code=ReplayOrInvalidNonce.code,
                    principal=key,
                    expected=expected,
                    presented=repr(presented),
                )
                raise ReplayOrInvalidNonce(key, expected, presented)

            InvariantChecker.check_monotonic_increase(f"nonce[{key}]", expected, expected + 1)
            self._counters[key] = expected + 1

        logger.debug("Nonce consumed", principal=key, nonce=presented)
        return presented

    def principals(self) -> List[str]:
        with self._lock:
            return list(self._counters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def restore(self, snapshot: Dict[str, int]) -> None:
        with self._lock:
            self._counters = dict(snapshot)

"""
Nonce registry tests: strict ordering and atomic consumption.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from eth_account import Account

from tools.metatx.hardening import ReplayOrInvalidNonce, ValidationErrors
from tools.metatx.nonces import NonceRegistry


@pytest.fixture
def registry():
    return NonceRegistry()


@pytest.fixture
def principal():
    return Account.create().address


class TestNonceOrdering:
    """Only the current value is ever accepted."""

    def test_unseen_principal_starts_at_zero(self, registry, principal):
        assert registry.current_nonce(principal) == 0
        assert len(registry) == 0

    def test_consume_advances_by_one(self, registry, principal):
        assert registry.consume(principal, 0) == 0
        assert registry.current_nonce(principal) == 1
        assert registry.consume(principal, 1) == 1
        assert registry.current_nonce(principal) == 2

    def test_replay_rejected(self, registry, principal):
        registry.consume(principal, 0)
        with pytest.raises(ReplayOrInvalidNonce) as exc_info:
            registry.consume(principal, 0)
        assert exc_info.value.expected == 1
        assert exc_info.value.presented == 0
        assert registry.current_nonce(principal) == 1

    def test_skipping_ahead_rejected(self, registry, principal):
        with pytest.raises(ReplayOrInvalidNonce):
            registry.consume(principal, 1)
        assert registry.current_nonce(principal) == 0

    @pytest.mark.parametrize("presented", [-1, "0", 0.0, None, False])
    def test_non_integer_or_negative_rejected(self, registry, principal, presented):
        with pytest.raises(ReplayOrInvalidNonce):
            registry.consume(principal, presented)
        assert registry.current_nonce(principal) == 0

    def test_principals_are_independent(self, registry, principal):
        other = Account.create().address
        registry.consume(principal, 0)
        assert registry.current_nonce(other) == 0
        registry.consume(other, 0)
        assert sorted(registry.principals()) == sorted([principal, other])

    def test_address_casing_is_one_principal(self, registry, principal):
        registry.consume(principal.lower(), 0)
        assert registry.current_nonce(principal) == 1

    def test_invalid_principal(self, registry):
        with pytest.raises(ValidationErrors):
            registry.current_nonce("not-an-address")

    def test_snapshot_restore(self, registry, principal):
        registry.consume(principal, 0)
        snap = registry.snapshot()
        registry.consume(principal, 1)
        registry.restore(snap)
        assert registry.current_nonce(principal) == 1


class TestNonceConcurrency:
    """Concurrent consumers of the same nonce."""

    def test_exactly_one_winner(self, registry, principal):
        def attempt(_):
            try:
                registry.consume(principal, 0)
                return True
            except ReplayOrInvalidNonce:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            outcomes = list(pool.map(attempt, range(64)))

        assert outcomes.count(True) == 1
        assert registry.current_nonce(principal) == 1

    def test_sequential_consumers_never_skip(self, registry, principal):
        def attempt_all(_):
            wins = 0
            for n in range(50):
                try:
                    registry.consume(principal, n)
                    wins += 1
                except ReplayOrInvalidNonce:
                    pass
            return wins

        with ThreadPoolExecutor(max_workers=8) as pool:
            total = sum(pool.map(attempt_all, range(8)))

        assert total == registry.current_nonce(principal)
        assert total <= 50

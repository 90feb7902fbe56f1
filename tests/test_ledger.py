"""
Ledger executor tests: fees, deployment, journaled atomicity.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
from eth_account import Account

from tools.metatx.hardening import ExecutionReverted, InvariantViolation
from tools.metatx.ledger import CallContext, Contract, Ledger


class Register(Contract):
    """Minimal contract with one journaled value."""

    _journaled = ("values",)

    def __init__(self):
        super().__init__()
        self.values = {}
        self.deployer = None

    def on_deploy(self, deployer):
        self.deployer = deployer

    def put(self, ctx, key, value):
        self.values[key] = (ctx.sender, value)
        return value

    def put_then_fail(self, ctx, key, value):
        self.values[key] = (ctx.sender, value)
        raise ExecutionReverted("Register: refused")


@pytest.fixture
def user(ledger):
    acct = Account.create()
    ledger.fund(acct.address)
    return acct.address


class TestAccounts:
    """Native balances and configuration."""

    def test_defaults_from_config(self, ledger):
        assert ledger.chain_id == 31337
        assert ledger.fee_per_transaction == 21000 * 1_000_000_000

    def test_constructor_overrides(self):
        ledger = Ledger(chain_id=5, gas_price=2, intrinsic_gas=10)
        assert ledger.chain_id == 5
        assert ledger.fee_per_transaction == 20

    def test_config_override_applies(self):
        from tools.metatx.config import get_config_manager

        get_config_manager().set("ledger.chain_id", 1337)
        assert Ledger().chain_id == 1337

    def test_fund_defaults_to_initial_balance(self, ledger, user):
        assert ledger.balance_of(user) == 10_000 * 10 ** 18

    def test_fund_explicit_amount(self, ledger):
        addr = Account.create().address
        assert ledger.fund(addr, 5) == 5
        assert ledger.fund(addr.lower(), 5) == 10


class TestDeployment:
    """Contract placement."""

    def test_deploy_assigns_address(self, ledger, user):
        reg = Register()
        address = ledger.deploy(reg, user)
        assert reg.address == address
        assert reg.ledger is ledger
        assert reg.deployer == user
        assert ledger.contract_at(address) is reg

    def test_addresses_are_distinct(self, ledger, user):
        a = ledger.deploy(Register(), user)
        b = ledger.deploy(Register(), user)
        assert a != b

    def test_cannot_deploy_twice(self, ledger, user):
        reg = Register()
        ledger.deploy(reg, user)
        with pytest.raises(ValueError):
            ledger.deploy(reg, user)

    def test_contract_at_unknown(self, ledger):
        assert ledger.contract_at(Account.create().address) is None
        assert ledger.contract_at("garbage") is None


class TestTransactions:
    """Fees and all-or-nothing execution."""

    def test_successful_transaction(self, ledger, user):
        reg = Register()
        ledger.deploy(reg, user)
        before = ledger.balance_of(user)

        receipt = ledger.transact(user, reg.put, "k", 1)

        assert receipt.succeeded
        assert receipt.return_value == 1
        assert receipt.fee == ledger.fee_per_transaction
        assert ledger.balance_of(user) == before - receipt.fee
        assert reg.values["k"] == (user, 1)
        assert ledger.block_number == 1

    def test_failed_transaction_reverts_but_charges_fee(self, ledger, user):
        reg = Register()
        ledger.deploy(reg, user)
        before = ledger.balance_of(user)

        with pytest.raises(ExecutionReverted, match="refused"):
            ledger.transact(user, reg.put_then_fail, "k", 1)

        assert "k" not in reg.values
        assert ledger.balance_of(user) == before - ledger.fee_per_transaction
        assert ledger.receipts[-1].status == 0
        assert ledger.receipts[-1].error == "Register: refused"

    def test_insufficient_funds_for_fee(self, ledger):
        poor = Account.create().address
        reg = Register()
        ledger.deploy(reg, poor)
        with pytest.raises(InvariantViolation, match="Insufficient"):
            ledger.transact(poor, reg.put, "k", 1)
        assert reg.values == {}
        assert ledger.receipts == []

    def test_atomic_restores_balances(self, ledger, user):
        before = ledger.balance_of(user)
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                ledger.fund(user, 1)
                raise RuntimeError("boom")
        assert ledger.balance_of(user) == before

    def test_nested_atomic_inner_failure_only(self, ledger, user):
        reg = Register()
        ledger.deploy(reg, user)
        ctx = CallContext.direct(user)
        with ledger.atomic():
            reg.put(ctx, "outer", 1)
            try:
                with ledger.atomic():
                    reg.put(ctx, "inner", 2)
                    raise RuntimeError("inner")
            except RuntimeError:
                pass
        assert "outer" in reg.values
        assert "inner" not in reg.values

    def test_reverted_deployment_is_undone(self, ledger, user):
        reg = Register()
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                address = ledger.deploy(reg, user)
                raise RuntimeError("boom")

        assert ledger.contract_at(address) is None
        assert not reg.deployed
        assert reg.ledger is None
        assert ledger.deploy(reg, user) == address


class TestCallContext:
    def test_direct_context(self):
        addr = Account.create().address
        ctx = CallContext.direct(addr)
        assert ctx.sender == ctx.origin == ctx.acting_principal == addr
        assert ctx.value == 0

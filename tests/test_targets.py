"""
Action target tests: sender resolution, message counter, token ledger, call data.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
from eth_abi import decode as abi_decode
from eth_account import Account

from tools.metatx.hardening import ExecutionReverted
from tools.metatx.ledger import CallContext
from tools.metatx.targets import (
    MessageCounter,
    TokenLedger,
    decode_function_call,
    encode_function_call,
    function_selector,
)

INITIAL_SUPPLY = 1_000_000


@pytest.fixture
def forwarder():
    return Account.create().address


class TestCallData:
    """ABI call data encoding."""

    def test_transfer_selector(self):
        assert function_selector("transfer(address,uint256)").hex() == "a9059cbb"

    def test_encode_decode(self):
        to = Account.create().address
        data = encode_function_call("transfer(address,uint256)", [to, 10])
        assert data[:4].hex() == "a9059cbb"
        signature, args = decode_function_call(data, ["mint(address,uint256)", "transfer(address,uint256)"])
        assert signature == "transfer(address,uint256)"
        assert args[0].lower() == to.lower()
        assert args[1] == 10

    def test_wrong_arity(self):
        with pytest.raises(ValueError):
            encode_function_call("transfer(address,uint256)", [1])

    def test_unknown_selector(self):
        with pytest.raises(ExecutionReverted, match="selector"):
            decode_function_call(b"\x00\x00\x00\x00", ["transfer(address,uint256)"])

    def test_short_data(self):
        with pytest.raises(ExecutionReverted):
            decode_function_call(b"\xa9", ["transfer(address,uint256)"])

    def test_truncated_arguments(self):
        data = encode_function_call("transfer(address,uint256)", [Account.create().address, 1])
        with pytest.raises(ExecutionReverted, match="invalid call data"):
            decode_function_call(data[:20], ["transfer(address,uint256)"])


class TestTrustedForwarder:
    """msg_sender resolution."""

    def test_direct_caller_is_sender(self, forwarder):
        counter = MessageCounter(trusted_forwarder=forwarder)
        caller = Account.create().address
        assert counter.msg_sender(CallContext.direct(caller)) == caller

    def test_forwarder_supplies_principal(self, forwarder):
        counter = MessageCounter(trusted_forwarder=forwarder)
        principal = Account.create().address
        ctx = CallContext(sender=forwarder, origin=Account.create().address, acting_principal=principal)
        assert counter.msg_sender(ctx) == principal

    def test_untrusted_intermediary_cannot_impersonate(self, forwarder):
        counter = MessageCounter(trusted_forwarder=forwarder)
        impostor = Account.create().address
        ctx = CallContext(sender=impostor, origin=impostor, acting_principal=Account.create().address)
        assert counter.msg_sender(ctx) == impostor

    def test_no_forwarder_configured(self):
        counter = MessageCounter()
        caller = Account.create().address
        ctx = CallContext(sender=caller, origin=caller, acting_principal=Account.create().address)
        assert counter.msg_sender(ctx) == caller


class TestMessageCounter:
    """Last message and count per principal."""

    def test_defaults(self):
        counter = MessageCounter()
        someone = Account.create().address
        assert counter.last_message_of(someone) == ""
        assert counter.count_of(someone) == 0

    def test_direct_set_message(self):
        counter = MessageCounter()
        caller = Account.create().address
        ctx = CallContext.direct(caller)
        assert counter.set_message(ctx, "one") == 1
        assert counter.set_message(ctx, "two") == 2
        assert counter.last_message_of(caller) == "two"
        assert counter.count_of(caller.lower()) == 2

    def test_call_requires_message(self):
        counter = MessageCounter()
        with pytest.raises(ExecutionReverted, match="missing message"):
            counter.call(CallContext.direct(Account.create().address), {})


class TestTokenLedger:
    """Tincoin behaviour."""

    @pytest.fixture
    def token(self, ledger, accounts, forwarder):
        token = TokenLedger(INITIAL_SUPPLY, trusted_forwarder=forwarder)
        ledger.deploy(token, accounts["deployer"].address)
        return token

    def test_metadata(self, token):
        assert token.name == "Tincoin"
        assert token.symbol == "TIN"
        assert token.decimals == 18

    def test_initial_supply_minted_to_deployer(self, token, accounts):
        expected = INITIAL_SUPPLY * 10 ** 18
        assert token.total_supply() == expected
        assert token.balance_of(accounts["deployer"].address) == expected
        assert token.owner == accounts["deployer"].address

    def test_transfer(self, ledger, token, accounts):
        a, b = accounts["deployer"].address, accounts["receiver"].address
        ledger.transact(a, token.transfer, b, 10)
        assert token.balance_of(b) == 10
        assert token.balance_of(a) == INITIAL_SUPPLY * 10 ** 18 - 10

    def test_transfer_exceeding_balance(self, ledger, token, accounts):
        with pytest.raises(ExecutionReverted, match="exceeds balance"):
            ledger.transact(accounts["user"].address, token.transfer, accounts["receiver"].address, 1)

    def test_transfer_to_zero_address(self, ledger, token, accounts):
        with pytest.raises(ExecutionReverted, match="zero address"):
            ledger.transact(accounts["deployer"].address, token.transfer, "0x" + "00" * 20, 1)

    def test_non_owner_cannot_mint(self, ledger, token, accounts):
        user = accounts["user"].address
        with pytest.raises(ExecutionReverted, match="Ownable: caller is not the owner"):
            ledger.transact(user, token.mint, user, 10 ** 18)
        assert token.balance_of(user) == 0

    def test_owner_mints(self, ledger, token, accounts):
        owner = accounts["deployer"].address
        amount = 10 * 10 ** 18
        before_balance = token.balance_of(owner)
        before_supply = token.total_supply()

        ledger.transact(owner, token.mint, owner, amount)

        assert token.balance_of(owner) == before_balance + amount
        assert token.total_supply() == before_supply + amount

    def test_call_rejects_value(self, token, forwarder, accounts):
        data = encode_function_call("transfer(address,uint256)", [accounts["receiver"].address, 1])
        ctx = CallContext(sender=forwarder, origin=forwarder, acting_principal=accounts["deployer"].address)
        with pytest.raises(ExecutionReverted, match="non-payable"):
            token.call(ctx, {"value": 1, "data": data})

    def test_call_decodes_transfer(self, token, forwarder, accounts):
        receiver = accounts["receiver"].address
        data = encode_function_call("transfer(address,uint256)", [receiver, 7])
        ctx = CallContext(sender=forwarder, origin=forwarder, acting_principal=accounts["deployer"].address)
        result = token.call(ctx, {"value": 0, "data": data})
        assert result.success
        assert abi_decode(["bool"], result.return_data) == (True,)
        assert token.balance_of(receiver) == 7

"""
End-to-end relay scenarios.

A principal signs with a wallet-style typed-data signer, a separate relayer
submits through the ledger and pays the fee, and all effects land on the
principal.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
from eth_account import Account

from tools.metatx.dispatcher import (
    META_TX_SCHEMA,
    SIGNATURE_SCHEMA,
    ActionKind,
    ActionSpec,
    ExecutionDispatcher,
)
from tools.metatx.hardening import ExecutionReverted, ReplayOrInvalidNonce, SignerMismatch
from tools.metatx.targets import MessageCounter, TokenLedger, encode_function_call
from tools.metatx.typed_data import TypedMessageCodec

INITIAL_SUPPLY = 1_000_000


def wallet_sign(account, dispatcher, message):
    """Sign the way a wallet does: from the JSON signing payload."""
    payload = TypedMessageCodec.signing_payload(dispatcher.domain, message)
    return bytes(Account.sign_typed_data(account.key, full_message=payload).signature)


class TestMessageCounterRelay:
    """A relayer sets a message on behalf of a signer."""

    @pytest.fixture
    def system(self, ledger, accounts):
        deployer = accounts["deployer"].address
        dispatcher = ExecutionDispatcher("EIP712MessageCounter", "0.0.1")
        ledger.deploy(dispatcher, deployer)
        counter = MessageCounter(trusted_forwarder=dispatcher.address)
        ledger.deploy(counter, deployer)
        dispatcher.register_action(ActionSpec(ActionKind.SIGNED_MESSAGE, SIGNATURE_SCHEMA, target=counter))
        return dispatcher, counter

    def test_relayer_sends_on_behalf_of_signer(self, ledger, accounts, system):
        dispatcher, counter = system
        signer, relayer = accounts["deployer"], accounts["relayer"]
        relayer_before = ledger.balance_of(relayer.address)
        signer_before = ledger.balance_of(signer.address)

        message = dispatcher.build_message("Signature", {
            "signer": signer.address,
            "message": "First Message",
        })
        signature = wallet_sign(signer, dispatcher, message)

        receipt = ledger.transact(relayer.address, dispatcher.execute, message, signature)

        assert receipt.succeeded
        assert counter.last_message_of(signer.address) == "First Message"
        assert counter.count_of(signer.address) == 1
        assert counter.last_message_of(relayer.address) == ""
        assert counter.count_of(relayer.address) == 0
        assert ledger.balance_of(relayer.address) < relayer_before
        assert ledger.balance_of(signer.address) == signer_before

    def test_rejected_submission_still_costs_relayer(self, ledger, accounts, system):
        dispatcher, counter = system
        signer, relayer = accounts["deployer"], accounts["relayer"]
        relayer_before = ledger.balance_of(relayer.address)
        message = dispatcher.build_message("Signature", {"signer": signer.address, "message": "x"})
        forged = wallet_sign(relayer, dispatcher, message)

        with pytest.raises(SignerMismatch):
            ledger.transact(relayer.address, dispatcher.execute, message, forged)

        assert counter.count_of(signer.address) == 0
        assert ledger.balance_of(relayer.address) == relayer_before - ledger.fee_per_transaction
        assert ledger.receipts[-1].status == 0

    def test_resubmitted_message_counts_again(self, ledger, accounts, system):
        """Signed messages carry no nonce, so a resubmission is accepted."""
        dispatcher, counter = system
        signer, relayer = accounts["deployer"], accounts["relayer"]
        message = dispatcher.build_message("Signature", {"signer": signer.address, "message": "again"})
        signature = wallet_sign(signer, dispatcher, message)

        ledger.transact(relayer.address, dispatcher.execute, message, signature)
        ledger.transact(relayer.address, dispatcher.execute, message, signature)

        assert counter.count_of(signer.address) == 2
        assert counter.last_message_of(signer.address) == "again"

    def test_signature_bound_to_deployment(self, ledger, accounts, system):
        """A signature for one dispatcher does not verify at another."""
        dispatcher, counter = system
        signer, relayer = accounts["deployer"], accounts["relayer"]
        other = ExecutionDispatcher("EIP712MessageCounter", "0.0.1")
        ledger.deploy(other, signer.address)
        other.register_action(ActionSpec(ActionKind.SIGNED_MESSAGE, SIGNATURE_SCHEMA, target=counter))

        message = dispatcher.build_message("Signature", {"signer": signer.address, "message": "x"})
        signature = wallet_sign(signer, dispatcher, message)

        with pytest.raises(SignerMismatch):
            ledger.transact(relayer.address, other.execute, message, signature)
        assert counter.count_of(signer.address) == 0


class TestTincoin:
    """Token behaviour and gasless transfers."""

    @pytest.fixture
    def token(self, ledger, accounts):
        token = TokenLedger(INITIAL_SUPPLY)
        ledger.deploy(token, accounts["deployer"].address)
        return token

    def test_v1_metadata_and_supply(self, token):
        assert token.name == "Tincoin"
        assert token.symbol == "TIN"
        assert token.total_supply() == INITIAL_SUPPLY * 10 ** token.decimals

    def test_v2_non_owner_mint_reverts(self, ledger, accounts, token):
        user = accounts["user"].address
        with pytest.raises(ExecutionReverted, match="Ownable: caller is not the owner"):
            ledger.transact(user, token.mint, user, 10 ** 18)

    def test_v2_owner_mint(self, ledger, accounts, token):
        owner = accounts["deployer"].address
        amount = 10 * 10 ** 18
        balance_before = token.balance_of(owner)
        supply_before = token.total_supply()
        ledger.transact(owner, token.mint, owner, amount)
        assert token.balance_of(owner) == balance_before + amount
        assert token.total_supply() == supply_before + amount

    def test_v3_gasless_transfer(self, ledger, accounts):
        deployer = accounts["deployer"]
        receiver = accounts["receiver"]
        relayer = accounts["relayer"]

        forwarder = ExecutionDispatcher("TincoinForwarder", "0.0.1")
        ledger.deploy(forwarder, deployer.address)
        forwarder.register_action(ActionSpec(ActionKind.META_TRANSACTION, META_TX_SCHEMA))
        token = TokenLedger(INITIAL_SUPPLY, trusted_forwarder=forwarder.address)
        ledger.deploy(token, deployer.address)

        user_eth_before = ledger.balance_of(deployer.address)
        relayer_eth_before = ledger.balance_of(relayer.address)
        relayer_tokens_before = token.balance_of(relayer.address)
        amount = 10 ** 10
        nonce = forwarder.nonce_of(deployer.address)

        message = forwarder.build_message("MetaTx", {
            "from": deployer.address,
            "to": token.address,
            "value": 0,
            "nonce": nonce,
            "data": encode_function_call("transfer(address,uint256)", [receiver.address, amount]),
        })
        signature = wallet_sign(deployer, forwarder, message)

        ledger.transact(relayer.address, forwarder.execute, message, signature)

        assert token.balance_of(receiver.address) == amount
        assert ledger.balance_of(deployer.address) == user_eth_before
        assert ledger.balance_of(relayer.address) < relayer_eth_before
        assert token.balance_of(relayer.address) == relayer_tokens_before == 0

        # The same authorization cannot be submitted twice.
        with pytest.raises(ReplayOrInvalidNonce):
            ledger.transact(relayer.address, forwarder.execute, message, signature)

        # Nor re-labelled with the next nonce.
        relabelled = forwarder.build_message("MetaTx", {**message.to_payload_values(), "nonce": nonce + 1})
        with pytest.raises(SignerMismatch):
            ledger.transact(relayer.address, forwarder.execute, relabelled, signature)

        assert token.balance_of(receiver.address) == amount
        assert forwarder.nonce_of(deployer.address) == nonce + 1

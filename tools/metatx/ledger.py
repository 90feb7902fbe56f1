"""
METATX Ledger

In-process serializing executor standing in for the chain.

Every state-changing call runs through ``Ledger.transact``, which holds the
ledger lock for the whole call, charges the submitter a flat execution fee,
and runs the call inside ``atomic()``. If the call raises, every deployed
contract and every native balance is restored to its pre-call value; only the
fee remains charged.

    relayer ──transact(fn)──► Ledger ──atomic()──► fn(CallContext.direct(relayer))
                                │
                                ├── charge fee (kept on failure)
                                └── receipt (status 1 / 0)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from eth_utils import keccak, to_checksum_address

from tools.metatx.config import get_config
from tools.metatx.hardening import (
    AtomicCounter,
    InvariantChecker,
    Validators,
)
from tools.metatx.observability import Layer, get_logger

logger = get_logger("executor", Layer.LEDGER)


@dataclass(frozen=True)
class CallContext:
    """
    Who is calling, who pays, and who authorized.

    ``sender`` is the immediate caller (the dispatcher's address for relayed
    calls), ``origin`` the transaction submitter, ``acting_principal`` the
    identity the call is performed on behalf of.
    """
    sender: str
    origin: str
    acting_principal: Optional[str] = None
    value: int = 0

    @classmethod
    def direct(cls, sender: str, value: int = 0) -> "CallContext":
        """Context for a call submitted by ``sender`` with no intermediary."""
        return cls(sender=sender, origin=sender, acting_principal=sender, value=value)


class Contract:
    """
    Base for state living on the ledger.

    Subclasses list their mutable attributes in ``_journaled``. An attribute
    exposing ``snapshot()``/``restore()`` is journaled through them, anything
    else is deep-copied.
    """

    _journaled: Tuple[str, ...] = ()

    def __init__(self):
        self.address: Optional[str] = None
        self.ledger: Optional["Ledger"] = None

    def on_deploy(self, deployer: str) -> None:
        """Hook run once the contract has an address."""

    @property
    def deployed(self) -> bool:
        return self.address is not None

    def snapshot(self) -> Dict[str, Any]:
        state = {}
        for name in self._journaled:
            value = getattr(self, name)
            if hasattr(value, "snapshot") and hasattr(value, "restore"):
                state[name] = value.snapshot()
            else:
                state[name] = copy.deepcopy(value)
        return state

    def restore(self, state: Dict[str, Any]) -> None:
        for name, saved in state.items():
            current = getattr(self, name)
            if hasattr(current, "snapshot") and hasattr(current, "restore"):
                current.restore(saved)
            else:
                setattr(self, name, copy.deepcopy(saved))


@dataclass
class TransactionReceipt:
    """Outcome of one submitted transaction."""
    tx_hash: str
    sender: str
    status: int
    gas_used: int
    fee: int
    block_number: int
    return_value: Any = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class Ledger:
    """
    Serializing executor with native balances and deployed contracts.

    Parameters default to the ``ledger`` configuration section.
    """

    def __init__(
        self,
        chain_id: Optional[int] = None,
        gas_price: Optional[int] = None,
        intrinsic_gas: Optional[int] = None,
    ):
        config = get_config().ledger
        self.chain_id = chain_id if chain_id is not None else config.chain_id.get()
        self.gas_price = gas_price if gas_price is not None else config.gas_price.get()
        self.intrinsic_gas = intrinsic_gas if intrinsic_gas is not None else config.intrinsic_gas.get()
        Validators.validate_uint(self.chain_id, "chain_id").raise_if_invalid()

        self._lock = threading.RLock()
        self._balances: Dict[str, int] = {}
        self._contracts: Dict[str, Contract] = {}
        self._deployments = AtomicCounter()
        self._blocks = AtomicCounter()
        self.receipts: List[TransactionReceipt] = []

    @staticmethod
    def _account(address: str) -> str:
        return Validators.validate_address(address, "address").unwrap()

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def fund(self, address: str, amount: Optional[int] = None) -> int:
        """Credit native balance; defaults to ``ledger.initial_balance``."""
        if amount is None:
            amount = get_config().ledger.initial_balance.get()
        Validators.validate_uint(amount, "amount").raise_if_invalid()
        account = self._account(address)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount
            return self._balances[account]

    def balance_of(self, address: str) -> int:
        account = self._account(address)
        with self._lock:
            return self._balances.get(account, 0)

    @property
    def block_number(self) -> int:
        return self._blocks.get()

    @property
    def fee_per_transaction(self) -> int:
        return self.intrinsic_gas * self.gas_price

    # -------------------------------------------------------------------------
    # Contracts
    # -------------------------------------------------------------------------

    def deploy(self, contract: Contract, deployer: str) -> str:
        """Place ``contract`` at an address derived from the deployer and a counter."""
        deployer = self._account(deployer)
        with self._lock:
            if contract.deployed:
                raise ValueError(f"Contract already deployed at {contract.address}")
            n = self._deployments.increment()
            address = to_checksum_address(keccak(text=f"{deployer}:{n}")[-20:])
            contract.address = address
            contract.ledger = self
            self._contracts[address] = contract
            contract.on_deploy(deployer)

        logger.info(
            "Contract deployed",
            contract=type(contract).__name__,
            address=address,
            deployer=deployer,
        )
        return address

    def contract_at(self, address: str) -> Optional[Contract]:
        """The contract deployed at ``address``, or None."""
        result = Validators.validate_address(address, "address")
        if not result.is_valid:
            return None
        with self._lock:
            return self._contracts.get(result.sanitized_value)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run a block all-or-nothing.

        Contract state, deployments and native balances are restored if the
        block raises. Scopes nest; an inner failure caught by the caller only
        reverts the inner scope.
        """
        with self._lock:
            balances = dict(self._balances)
            contracts = dict(self._contracts)
            deployments = self._deployments.get()
            saved = [(c, c.snapshot()) for c in contracts.values()]
            try:
                yield
            except Exception:
                for address, contract in self._contracts.items():
                    if address not in contracts:
                        contract.address = None
                        contract.ledger = None
                self._contracts = contracts
                self._deployments = AtomicCounter(deployments)
                self._balances = balances
                for contract, state in saved:
                    contract.restore(state)
                raise

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def transact(self, sender: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> TransactionReceipt:
        """
        Submit ``fn`` as a transaction from ``sender``.

        ``fn`` is called as ``fn(CallContext.direct(sender), *args, **kwargs)``.
        The fee is charged before the call and kept if it fails; the failure
        is recorded in a status-0 receipt and then re-raised.
        """
        sender = self._account(sender)
        fee = self.fee_per_transaction

        with self._lock:
            available = self._balances.get(sender, 0)
            InvariantChecker.check_balance_sufficient(available, fee, f"funds of {sender} for fee")
            self._balances[sender] = available - fee

            block = self._blocks.increment()
            tx_hash = "0x" + keccak(text=f"{self.chain_id}:{sender}:{block}").hex()
            receipt = TransactionReceipt(
                tx_hash=tx_hash,
                sender=sender,
                status=0,
                gas_used=self.intrinsic_gas,
                fee=fee,
                block_number=block,
            )

            try:
                with self.atomic():
                    receipt.return_value = fn(CallContext.direct(sender), *args, **kwargs)
                receipt.status = 1
            except Exception as exc:
                receipt.error = str(exc)
                logger.warning(
                    "Transaction reverted",
                    error_code=getattr(exc, "code", type(exc).__name__),
                    tx_hash=tx_hash,
                    sender=sender,
                    reason=str(exc),
                )
                raise
            finally:
                self.receipts.append(receipt)

        logger.debug("Transaction mined", tx_hash=tx_hash, sender=sender, block=block, fee=fee)
        return receipt

"""
METATX Action Targets

Contracts that relayed authorizations act upon.

A target never sees signatures. It receives a CallContext and resolves the
acting identity with ``msg_sender``: when the immediate caller is the
target's trusted forwarder, the principal supplied by the forwarder is the
sender; for any other caller the caller itself is. All state a target keeps
is attributed to that resolved identity, never to the relayer that paid.

Targets:
    MessageCounter   last message and message count per principal
    TokenLedger      fixed-supply fungible token with owner-only minting

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from tools.metatx.hardening import (
    CryptoUtils,
    ExecutionReverted,
    Validators,
)
from tools.metatx.ledger import CallContext, Contract
from tools.metatx.observability import Layer, get_logger

logger = get_logger("targets", Layer.TARGET)

ZERO_ADDRESS = "0x" + "00" * 20

SIGNATURE_PATTERN = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*)\(([^()]*)\)$')


@dataclass(frozen=True)
class ActionResult:
    """What a target hands back to the dispatcher."""
    success: bool = True
    return_data: Any = None
    error: Optional[str] = None


class ActionTarget(Protocol):
    """Anything the dispatcher can forward an authorized action to."""
    address: Optional[str]

    def call(self, ctx: CallContext, payload: Mapping[str, Any]) -> ActionResult:
        ...


class TrustedForwarderMixin:
    """Sender resolution for targets that accept relayed calls."""

    trusted_forwarder: Optional[str] = None

    def is_trusted_forwarder(self, address: Optional[str]) -> bool:
        if not self.trusted_forwarder or not address:
            return False
        return CryptoUtils.same_address(self.trusted_forwarder, address)

    def msg_sender(self, ctx: CallContext) -> str:
        """The identity a call acts as."""
        if ctx.acting_principal and self.is_trusted_forwarder(ctx.sender):
            return ctx.acting_principal
        return ctx.sender


# =============================================================================
# CALL DATA
# =============================================================================

def _parse_signature(signature: str) -> Tuple[str, List[str]]:
    match = SIGNATURE_PATTERN.match(signature.replace(" ", ""))
    if not match:
        raise ValueError(f"Invalid function signature: {signature}")
    args = match.group(2)
    return match.group(1), args.split(",") if args else []


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of the canonical signature."""
    name, types = _parse_signature(signature)
    return keccak(text=f"{name}({','.join(types)})")[:4]


def encode_function_call(signature: str, args: Sequence[Any]) -> bytes:
    """
    ABI call data for ``signature`` applied to ``args``.

    Example: encode_function_call("transfer(address,uint256)", [to, 10])
    """
    _, types = _parse_signature(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} takes {len(types)} arguments, got {len(args)}")
    return function_selector(signature) + abi_encode(types, list(args))


def decode_function_call(data: bytes, signatures: Iterable[str]) -> Tuple[str, Tuple[Any, ...]]:
    """
    Match call data against ``signatures`` by selector and decode the arguments.

    Raises ExecutionReverted for unknown selectors or undecodable arguments.
    """
    data = bytes(data)
    if len(data) >= 4:
        for signature in signatures:
            if data[:4] == function_selector(signature):
                _, types = _parse_signature(signature)
                try:
                    return signature, tuple(abi_decode(types, data[4:]))
                except DecodingError as exc:
                    raise ExecutionReverted(f"invalid call data for {signature}") from exc
    raise ExecutionReverted("function selector was not recognized and there's no fallback function")


# =============================================================================
# MESSAGE COUNTER
# =============================================================================

class MessageCounter(Contract, TrustedForwarderMixin):
    """
    Stores the last message each principal sent and how many they sent.

    Direct callers use ``set_message``; relayed authorizations arrive through
    ``call`` with a ``{"message": text}`` payload.
    """

    _journaled = ("_last_messages", "_counts")

    def __init__(self, trusted_forwarder: Optional[str] = None):
        super().__init__()
        self.trusted_forwarder = (
            Validators.validate_address(trusted_forwarder, "trusted_forwarder").unwrap()
            if trusted_forwarder else None
        )
        self._last_messages: Dict[str, str] = {}
        self._counts: Dict[str, int] = {}

    @staticmethod
    def _key(address: str) -> str:
        return Validators.validate_address(address, "address").unwrap()

    def last_message_of(self, address: str) -> str:
        return self._last_messages.get(self._key(address), "")

    def count_of(self, address: str) -> int:
        return self._counts.get(self._key(address), 0)

    def set_message(self, ctx: CallContext, text: str) -> int:
        text = Validators.validate_string(text, "message").unwrap()
        principal = self._key(self.msg_sender(ctx))
        self._last_messages[principal] = text
        self._counts[principal] = self._counts.get(principal, 0) + 1
        logger.debug("Message stored", principal=principal, count=self._counts[principal])
        return self._counts[principal]

    def call(self, ctx: CallContext, payload: Mapping[str, Any]) -> ActionResult:
        if "message" not in payload:
            raise ExecutionReverted("MessageCounter: missing message")
        return ActionResult(success=True, return_data=self.set_message(ctx, payload["message"]))


# =============================================================================
# TOKEN LEDGER
# =============================================================================

TRANSFER_SIGNATURE = "transfer(address,uint256)"
MINT_SIGNATURE = "mint(address,uint256)"


class TokenLedger(Contract, TrustedForwarderMixin):
    """
    Fungible token ("Tincoin").

    ``initial_supply`` is in whole tokens and is minted, scaled by
    ``10 ** decimals``, to the deployer, who becomes the owner. Relayed calls
    carry ABI call data for ``transfer`` or ``mint``.
    """

    _journaled = ("_balances", "_total_supply", "owner")

    def __init__(
        self,
        initial_supply: int,
        trusted_forwarder: Optional[str] = None,
        name: str = "Tincoin",
        symbol: str = "TIN",
        decimals: int = 18,
    ):
        super().__init__()
        self.initial_supply = Validators.validate_uint(initial_supply, "initial_supply").unwrap()
        self.trusted_forwarder = (
            Validators.validate_address(trusted_forwarder, "trusted_forwarder").unwrap()
            if trusted_forwarder else None
        )
        self.name = name
        self.symbol = symbol
        self.decimals = Validators.validate_uint(decimals, "decimals", bits=8).unwrap()
        self.owner: Optional[str] = None
        self._balances: Dict[str, int] = {}
        self._total_supply = 0

    def on_deploy(self, deployer: str) -> None:
        self.owner = deployer
        self._mint(deployer, self.initial_supply * 10 ** self.decimals)

    @staticmethod
    def _key(address: str) -> str:
        return Validators.validate_address(address, "address").unwrap()

    def balance_of(self, address: str) -> int:
        return self._balances.get(self._key(address), 0)

    def total_supply(self) -> int:
        return self._total_supply

    def _mint(self, to: str, amount: int) -> None:
        if CryptoUtils.same_address(to, ZERO_ADDRESS):
            raise ExecutionReverted("ERC20: mint to the zero address")
        to = self._key(to)
        self._total_supply += amount
        self._balances[to] = self._balances.get(to, 0) + amount

    def _transfer(self, sender: str, to: str, amount: int) -> None:
        if CryptoUtils.same_address(to, ZERO_ADDRESS):
            raise ExecutionReverted("ERC20: transfer to the zero address")
        sender, to = self._key(sender), self._key(to)
        balance = self._balances.get(sender, 0)
        if balance < amount:
            raise ExecutionReverted("ERC20: transfer amount exceeds balance")
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount
        logger.debug("Transfer", sender=sender, to=to, amount=amount)

    def transfer(self, ctx: CallContext, to: str, amount: int) -> bool:
        amount = Validators.validate_uint(amount, "amount").unwrap()
        self._transfer(self.msg_sender(ctx), to, amount)
        return True

    def mint(self, ctx: CallContext, to: str, amount: int) -> bool:
        amount = Validators.validate_uint(amount, "amount").unwrap()
        if self.owner is None or not CryptoUtils.same_address(self.msg_sender(ctx), self.owner):
            raise ExecutionReverted("Ownable: caller is not the owner")
        self._mint(to, amount)
        return True

    def call(self, ctx: CallContext, payload: Mapping[str, Any]) -> ActionResult:
        if payload.get("value", 0):
            raise ExecutionReverted("TokenLedger: non-payable")

        signature, args = decode_function_call(
            payload.get("data", b""), (TRANSFER_SIGNATURE, MINT_SIGNATURE)
        )
        to, amount = to_checksum_address(args[0]), args[1]
        if signature == TRANSFER_SIGNATURE:
            ok = self.transfer(ctx, to, amount)
        else:
            ok = self.mint(ctx, to, amount)
        return ActionResult(success=True, return_data=abi_encode(["bool"], [ok]))

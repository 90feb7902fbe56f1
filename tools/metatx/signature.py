"""
METATX Signature Verification

Recovers the identity that produced a secp256k1 signature over a 32-byte
digest.

Recovery never decides whether the identity is the *right* one: it returns
some identity or raises InvalidSignature. Comparing against a claimed signer
is the dispatcher's job, which keeps "structurally broken" distinguishable
from "valid, but signed by somebody else".

Accepted shape (65 bytes, r ‖ s ‖ v):
    - v in {27, 28}; 0 and 1 are accepted and normalized
    - 0 < r < n
    - 0 < s <= n/2 when low-s enforcement is on (default)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError

from tools.metatx.domain import DomainContext
from tools.metatx.hardening import CryptoUtils, InvalidSignature
from tools.metatx.observability import Layer, get_logger

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

SIGNATURE_LENGTH = 65

logger = get_logger("verifier", Layer.SIGNATURE)


@dataclass(frozen=True)
class Signature:
    """A parsed recoverable ECDSA signature."""
    r: int
    s: int
    v: int

    @classmethod
    def from_bytes(cls, raw: Union[bytes, bytearray]) -> "Signature":
        """Parse ``r ‖ s ‖ v``; raise InvalidSignature on any malformation."""
        if not isinstance(raw, (bytes, bytearray)):
            raise InvalidSignature(f"Signature must be bytes, got {type(raw).__name__}")
        if len(raw) != SIGNATURE_LENGTH:
            raise InvalidSignature(
                f"Invalid signature length: expected {SIGNATURE_LENGTH}, got {len(raw)}"
            )
        r = int.from_bytes(raw[0:32], "big")
        s = int.from_bytes(raw[32:64], "big")
        v = raw[64]
        if v in (0, 1):
            v += 27
        if v not in (27, 28):
            raise InvalidSignature(f"Invalid signature 'v' value: {raw[64]}")
        if not 0 < r < SECP256K1_N:
            raise InvalidSignature("Invalid signature 'r' value")
        if not 0 < s < SECP256K1_N:
            raise InvalidSignature("Invalid signature 's' value")
        return cls(r=r, s=s, v=v)

    @classmethod
    def from_hex(cls, text: str) -> "Signature":
        body = text[2:] if text.startswith("0x") else text
        try:
            raw = bytes.fromhex(body)
        except ValueError as exc:
            raise InvalidSignature("Signature is not valid hex") from exc
        return cls.from_bytes(raw)

    @classmethod
    def parse(cls, value: Union["Signature", bytes, bytearray, str]) -> "Signature":
        if isinstance(value, Signature):
            return value
        if isinstance(value, str):
            return cls.from_hex(value)
        return cls.from_bytes(value)

    @property
    def is_low_s(self) -> bool:
        return self.s <= SECP256K1_HALF_N

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


class SignatureVerifier:
    """
    Recovers signing identities from digests and signatures.

    Low-s enforcement follows ``signature.enforce_low_s`` unless overridden.
    """

    def __init__(self, enforce_low_s: Optional[bool] = None):
        if enforce_low_s is None:
            from tools.metatx.config import get_config
            enforce_low_s = get_config().signature.enforce_low_s.get()
        self.enforce_low_s = enforce_low_s

    def recover_signer(
        self,
        digest: bytes,
        signature: Union[Signature, bytes, bytearray, str],
    ) -> str:
        """Return the checksum address that signed ``digest``."""
        if not isinstance(digest, (bytes, bytearray)) or len(digest) != 32:
            raise InvalidSignature("Digest must be exactly 32 bytes")

        sig = Signature.parse(signature)
        if self.enforce_low_s and not sig.is_low_s:
            raise InvalidSignature("Invalid signature 's' value: not in lower half order")

        try:
            public_key = keys.Signature(vrs=(sig.v - 27, sig.r, sig.s)).recover_public_key_from_msg_hash(
                bytes(digest)
            )
        except (BadSignature, KeyValidationError, ValueError) as exc:
            raise InvalidSignature(f"Signature does not recover: {exc}") from exc

        address = public_key.to_checksum_address()
        logger.debug("Recovered signer", principal=address)
        return address

    def verify(
        self,
        digest: bytes,
        signature: Union[Signature, bytes, bytearray, str],
        expected_signer: str,
    ) -> bool:
        """Whether ``signature`` over ``digest`` recovers to ``expected_signer``."""
        try:
            recovered = self.recover_signer(digest, signature)
        except InvalidSignature:
            return False
        return CryptoUtils.same_address(recovered, expected_signer)


# =============================================================================
# OFF-CORE SIGNING HELPERS
# =============================================================================

def sign_digest(private_key: Union[bytes, str], digest: bytes) -> bytes:
    """Sign a raw 32-byte digest; returns the 65-byte ``r ‖ s ‖ v`` signature."""
    signed = Account.unsafe_sign_hash(digest, private_key)
    return bytes(signed.signature)


def sign_typed_message(private_key: Union[bytes, str], domain: DomainContext, message) -> bytes:
    """Sign a TypedMessage under ``domain`` as a wallet would."""
    from tools.metatx.typed_data import TypedMessageCodec
    digest = TypedMessageCodec.digest(domain, message.schema, message)
    return sign_digest(private_key, digest)

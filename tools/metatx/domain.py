"""
Domain context for typed-data signatures.

A DomainContext pins a signature to one protocol instance: the deployment
name and version, the chain it lives on, and the address of the contract that
verifies it. All four values enter every digest, so a signature produced for
one deployment never verifies against another.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping

from tools.metatx.hardening import ValidationError, ValidationErrors, Validators

DOMAIN_TYPE_NAME = "EIP712Domain"

# Field order is part of the signed bytes.
DOMAIN_FIELDS = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
)


def domain_type_definition() -> List[Dict[str, str]]:
    """The ``EIP712Domain`` entry of a signing payload's ``types``."""
    return [{"name": name, "type": type_} for name, type_ in DOMAIN_FIELDS]


@dataclass(frozen=True)
class DomainContext:
    """
    Immutable record identifying the protocol instance.

    ``verifying_contract`` is normalized to its checksum form on construction.
    """
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self):
        results = [
            Validators.validate_string(self.name, "name"),
            Validators.validate_string(self.version, "version"),
            Validators.validate_uint(self.chain_id, "chainId"),
            Validators.validate_address(self.verifying_contract, "verifyingContract"),
        ]
        errors = [e for r in results for e in r.errors]
        if errors:
            raise ValidationErrors(errors)
        object.__setattr__(self, "verifying_contract", results[3].sanitized_value)

    def to_dict(self) -> Dict[str, Any]:
        """Domain values keyed by their typed-data field names."""
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DomainContext":
        expected = {name for name, _ in DOMAIN_FIELDS}
        if set(data) != expected:
            raise ValidationErrors([ValidationError(
                "domain",
                f"Domain must have exactly the fields {sorted(expected)}, got {sorted(data)}",
                dict(data),
            )])
        return cls(
            name=data["name"],
            version=data["version"],
            chain_id=data["chainId"],
            verifying_contract=data["verifyingContract"],
        )

    @property
    def separator(self) -> bytes:
        """The 32-byte domain separator."""
        from tools.metatx.typed_data import TypedMessageCodec
        return TypedMessageCodec.domain_separator(self)

    def with_chain_id(self, chain_id: int) -> "DomainContext":
        return replace(self, chain_id=chain_id)

    def with_verifying_contract(self, address: str) -> "DomainContext":
        return replace(self, verifying_contract=address)

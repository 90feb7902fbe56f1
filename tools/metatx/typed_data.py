"""
METATX Typed Message Codec

Deterministic reconstruction of the bytes a principal signed.

Algorithm (EIP-712):

    encodeType(S)     = "S(t1 n1,t2 n2,...)"                 declared order
    typeHash(S)       = keccak256(encodeType(S))
    encodeData(S, m)  = enc(m.n1) ‖ enc(m.n2) ‖ ...          32 bytes each
                          string, bytes   -> keccak256(value)
                          atomic types    -> ABI word (left-padded ints and
                                             addresses, right-padded bytesN)
    hashStruct(S, m)  = keccak256(typeHash(S) ‖ encodeData(S, m))
    digest            = keccak256(0x19 ‖ 0x01 ‖ hashStruct(EIP712Domain, d)
                                  ‖ hashStruct(S, m))

Field order, type names, and the two-byte prefix are all part of the signed
bytes; signer and verifier must agree on each of them exactly. Only atomic
and dynamic (string, bytes) member types are supported; array and nested
struct members are rejected when the schema is built.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from eth_abi import encode as abi_encode
from eth_utils import keccak
from jsonschema import Draft202012Validator

from tools.metatx.domain import (
    DOMAIN_FIELDS,
    DOMAIN_TYPE_NAME,
    DomainContext,
    domain_type_definition,
)
from tools.metatx.hardening import (
    ValidationError,
    ValidationErrors,
    ValidationResult,
    Validators,
)

EIP712_PREFIX = b"\x19\x01"

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_$][A-Za-z0-9_$]*$')
UINT_PATTERN = re.compile(r'^uint(\d+)$')
INT_PATTERN = re.compile(r'^int(\d+)$')
FIXED_BYTES_PATTERN = re.compile(r'^bytes(\d+)$')


def _integer_width(match: Optional[re.Match]) -> Optional[int]:
    if match is None:
        return None
    bits = int(match.group(1))
    if bits % 8 != 0 or not 8 <= bits <= 256:
        return None
    return bits


def is_supported_type(type_name: str) -> bool:
    """Whether ``type_name`` is a member type this codec can encode."""
    if type_name in ("string", "bytes", "bool", "address"):
        return True
    if _integer_width(UINT_PATTERN.match(type_name)) or _integer_width(INT_PATTERN.match(type_name)):
        return True
    fixed = FIXED_BYTES_PATTERN.match(type_name)
    return bool(fixed) and 1 <= int(fixed.group(1)) <= 32


def coerce_value(type_name: str, value: Any, field_name: str) -> ValidationResult:
    """Type-check ``value`` against ``type_name`` and normalize it."""
    if type_name == "string":
        return Validators.validate_string(value, field_name)
    if type_name == "bytes":
        return Validators.validate_bytes(value, field_name)
    if type_name == "bool":
        return Validators.validate_bool(value, field_name)
    if type_name == "address":
        return Validators.validate_address(value, field_name)

    bits = _integer_width(UINT_PATTERN.match(type_name))
    if bits:
        return Validators.validate_uint(value, field_name, bits)
    bits = _integer_width(INT_PATTERN.match(type_name))
    if bits:
        return Validators.validate_int(value, field_name, bits)

    fixed = FIXED_BYTES_PATTERN.match(type_name)
    if fixed:
        return Validators.validate_bytes(value, field_name, exact_length=int(fixed.group(1)))

    return ValidationResult.failure(field_name, f"Unsupported type: {type_name}", value)


def encode_value(type_name: str, value: Any) -> bytes:
    """Encode one normalized member value as a 32-byte word."""
    if type_name == "string":
        return keccak(text=value)
    if type_name == "bytes":
        return keccak(value)
    return abi_encode([type_name], [value])


# =============================================================================
# SCHEMA
# =============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """One member of a message schema."""
    name: str
    type: str

    def __post_init__(self):
        if not isinstance(self.name, str) or not IDENTIFIER_PATTERN.match(self.name):
            raise ValidationErrors([ValidationError("field.name", "Invalid field name", self.name)])
        if not isinstance(self.type, str) or not is_supported_type(self.type):
            raise ValidationErrors([
                ValidationError(self.name, f"Unsupported type: {self.type}", self.type)
            ])

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type}


@dataclass(frozen=True)
class MessageSchema:
    """
    Named, ordered field list for one logical message kind.

    Insertion order defines encoding order and is part of the signed bytes.
    """
    primary_type: str
    fields: Tuple[FieldSpec, ...]

    def __post_init__(self):
        if not isinstance(self.primary_type, str) or not IDENTIFIER_PATTERN.match(self.primary_type):
            raise ValidationErrors([
                ValidationError("primaryType", "Invalid type name", self.primary_type)
            ])
        if self.primary_type == DOMAIN_TYPE_NAME:
            raise ValidationErrors([
                ValidationError("primaryType", f"{DOMAIN_TYPE_NAME} is reserved", self.primary_type)
            ])
        object.__setattr__(self, "fields", tuple(self.fields))
        names = [f.name for f in self.fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationErrors([
                ValidationError(self.primary_type, f"Duplicate field names: {duplicates}", names)
            ])

    @classmethod
    def of(cls, primary_type: str, fields: Iterable[Tuple[str, str]]) -> "MessageSchema":
        """Build a schema from ``(name, type)`` pairs."""
        return cls(primary_type, tuple(FieldSpec(name, type_) for name, type_ in fields))

    @classmethod
    def from_definitions(cls, primary_type: str, definitions: Sequence[Mapping[str, str]]) -> "MessageSchema":
        """Build a schema from a payload's ``[{"name": ..., "type": ...}]`` list."""
        return cls(primary_type, tuple(FieldSpec(d["name"], d["type"]) for d in definitions))

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def has_field(self, name: str) -> bool:
        return name in self.field_names

    def field_type(self, name: str) -> str:
        for f in self.fields:
            if f.name == name:
                return f.type
        raise KeyError(name)

    def definitions(self) -> List[Dict[str, str]]:
        return [f.to_dict() for f in self.fields]

    @property
    def type_hash(self) -> bytes:
        return TypedMessageCodec.type_hash(self)


# Hashed under DOMAIN_TYPE_NAME; the placeholder name only satisfies the reserved-name check.
_DOMAIN_MEMBERS = MessageSchema.of("EIP712DomainMembers", DOMAIN_FIELDS)


# =============================================================================
# TYPED MESSAGE
# =============================================================================

@dataclass(frozen=True)
class TypedMessage:
    """
    A schema plus concrete, type-checked field values.

    Every declared field must be supplied and no extra fields are allowed.
    Values are stored normalized: checksum addresses, raw ``bytes``.
    """
    schema: MessageSchema
    values: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "values", _normalize_values(self.schema, self.values))

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    @property
    def primary_type(self) -> str:
        return self.schema.primary_type

    def to_payload_values(self) -> Dict[str, Any]:
        """Values in JSON-friendly form (hex strings for byte values)."""
        return {
            name: ("0x" + value.hex()) if isinstance(value, bytes) else value
            for name, value in self.values.items()
        }


def _normalize_values(schema: MessageSchema, values: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(values, Mapping):
        raise ValidationErrors([
            ValidationError(schema.primary_type, "Message values must be a mapping", values)
        ])

    errors: List[ValidationError] = []
    normalized: Dict[str, Any] = {}

    extra = sorted(set(values) - set(schema.field_names))
    if extra:
        errors.append(ValidationError(schema.primary_type, f"Unexpected fields: {extra}", extra))

    for spec in schema.fields:
        if spec.name not in values:
            errors.append(ValidationError(spec.name, "Missing value"))
            continue
        result = coerce_value(spec.type, values[spec.name], spec.name)
        if result.is_valid:
            normalized[spec.name] = result.sanitized_value
        else:
            errors.extend(result.errors)

    if errors:
        raise ValidationErrors(errors)
    return normalized


# =============================================================================
# SIGNING PAYLOAD STRUCTURE
# =============================================================================

_TYPE_DEFINITIONS = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "type": {"type": "string"},
        },
        "required": ["name", "type"],
        "additionalProperties": False,
    },
}

SIGNING_PAYLOAD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "EIP-712 signing payload",
    "type": "object",
    "properties": {
        "types": {
            "type": "object",
            "required": [DOMAIN_TYPE_NAME],
            "additionalProperties": _TYPE_DEFINITIONS,
        },
        "primaryType": {"type": "string", "minLength": 1},
        "domain": {"type": "object"},
        "message": {"type": "object"},
    },
    "required": ["types", "primaryType", "domain", "message"],
    "additionalProperties": False,
}


@lru_cache(maxsize=1)
def _payload_validator() -> Draft202012Validator:
    return Draft202012Validator(SIGNING_PAYLOAD_SCHEMA)


def validate_signing_payload(payload: Any) -> List[str]:
    """Structural errors in a signing payload (empty if well-formed)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in _payload_validator().iter_errors(payload)
    ]


# =============================================================================
# CODEC
# =============================================================================

@lru_cache(maxsize=256)
def _type_hash(encoded_type: str) -> bytes:
    return keccak(text=encoded_type)


class TypedMessageCodec:
    """Struct hashing, domain separation, and signing-payload conversion."""

    @staticmethod
    def encode_type(schema: MessageSchema, type_name: Optional[str] = None) -> str:
        members = ",".join(f"{f.type} {f.name}" for f in schema.fields)
        return f"{type_name or schema.primary_type}({members})"

    @classmethod
    def type_hash(cls, schema: MessageSchema, type_name: Optional[str] = None) -> bytes:
        return _type_hash(cls.encode_type(schema, type_name))

    @staticmethod
    def encode_data(schema: MessageSchema, values: Mapping[str, Any]) -> bytes:
        """Concatenated 32-byte member encodings in declared order."""
        return b"".join(encode_value(f.type, values[f.name]) for f in schema.fields)

    @classmethod
    def hash_struct(cls, message: TypedMessage) -> bytes:
        schema = message.schema
        return keccak(cls.type_hash(schema) + cls.encode_data(schema, message.values))

    @classmethod
    def domain_separator(cls, domain: DomainContext) -> bytes:
        type_hash = cls.type_hash(_DOMAIN_MEMBERS, DOMAIN_TYPE_NAME)
        return keccak(type_hash + cls.encode_data(_DOMAIN_MEMBERS, domain.to_dict()))

    @classmethod
    def digest(
        cls,
        domain: DomainContext,
        schema: MessageSchema,
        message: Union[TypedMessage, Mapping[str, Any]],
    ) -> bytes:
        """
        The 32-byte digest a signer signs for ``message`` under ``domain``.

        ``message`` may be a TypedMessage built from ``schema`` or a plain
        mapping of field values, which is validated against ``schema``.
        """
        if not isinstance(message, TypedMessage):
            message = TypedMessage(schema, message)
        elif message.schema != schema:
            raise ValidationErrors([ValidationError(
                "schema",
                f"Message was built for {message.primary_type}, not {schema.primary_type}",
            )])
        return keccak(EIP712_PREFIX + cls.domain_separator(domain) + cls.hash_struct(message))

    @staticmethod
    def signing_payload(domain: DomainContext, message: TypedMessage) -> Dict[str, Any]:
        """The ``{types, primaryType, domain, message}`` structure handed to a wallet."""
        return {
            "types": {
                DOMAIN_TYPE_NAME: domain_type_definition(),
                message.primary_type: message.schema.definitions(),
            },
            "primaryType": message.primary_type,
            "domain": domain.to_dict(),
            "message": message.to_payload_values(),
        }

    @staticmethod
    def parse_payload(payload: Mapping[str, Any]) -> Tuple[DomainContext, TypedMessage]:
        """
        Rebuild the domain and message from a signing payload.

        The payload's ``EIP712Domain`` definition must be the fixed four-field
        definition in its fixed order; anything else would hash differently
        from what the verifier reconstructs.
        """
        problems = validate_signing_payload(payload)
        if problems:
            raise ValidationErrors([ValidationError("payload", p) for p in problems])

        types = payload["types"]
        if types[DOMAIN_TYPE_NAME] != domain_type_definition():
            raise ValidationErrors([ValidationError(
                DOMAIN_TYPE_NAME,
                "Domain type must be name:string, version:string, chainId:uint256, "
                "verifyingContract:address in that order",
                types[DOMAIN_TYPE_NAME],
            )])

        primary_type = payload["primaryType"]
        if primary_type not in types or primary_type == DOMAIN_TYPE_NAME:
            raise ValidationErrors([
                ValidationError("primaryType", f"No type definition for {primary_type}", primary_type)
            ])

        schema = MessageSchema.from_definitions(primary_type, types[primary_type])
        domain = DomainContext.from_dict(payload["domain"])
        return domain, TypedMessage(schema, payload["message"])

    @classmethod
    def digest_payload(cls, payload: Mapping[str, Any]) -> bytes:
        domain, message = cls.parse_payload(payload)
        return cls.digest(domain, message.schema, message)

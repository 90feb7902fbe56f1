"""
METATX: Relayed Typed-Data Authorization

A principal signs a structured, domain-scoped message off-band; an untrusted
relayer submits it and pays for execution; the dispatcher verifies the
authorization and performs the action as the principal, never as the relayer.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         RELAYED AUTHORIZATION                           │
    │                                                                         │
    │  LAYER 3: EXECUTION                                                     │
    │    dispatcher.py   Gate pipeline, action kinds, dispatch state machine  │
    │    targets.py      Trusted-forwarder targets: message counter, token    │
    │    ledger.py       Serializing executor, fees, journaled atomic scope   │
    │                                                                         │
    │  LAYER 2: AUTHORIZATION                                                 │
    │    signature.py    secp256k1 recovery with low-s policy                 │
    │    nonces.py       Per-principal strict-equality nonces                 │
    │                                                                         │
    │  LAYER 1: ENCODING                                                      │
    │    typed_data.py   Struct hashing, digests, signing payloads            │
    │    domain.py       Domain context and separator                         │
    │                                                                         │
    │  AMBIENT                                                                │
    │    hardening.py    Validation, error taxonomy, invariants               │
    │    config.py       YAML / METATX_* environment configuration            │
    │    observability.py Structured logging, hash-chained audit trail        │
    │                                                                         │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Exact Reconstruction: The verifier rebuilds the signed bytes from the
    message and its own live domain. Nothing the relayer supplies besides the
    message and signature influences the digest.

    Explicit Acting-As: Every call carries a CallContext. Targets resolve the
    acting identity from it; there is no ambient "current sender".

    Atomic Dispatch: Nonce consumption and target effects commit together or
    not at all. Only the relayer's fee survives a failure.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import METATX modules on first access."""

    if name in ("DomainContext", "DOMAIN_FIELDS", "DOMAIN_TYPE_NAME"):
        from tools.metatx import domain
        return getattr(domain, name)

    if name in ("FieldSpec", "MessageSchema", "TypedMessage", "TypedMessageCodec",
                "validate_signing_payload"):
        from tools.metatx import typed_data
        return getattr(typed_data, name)

    if name in ("Signature", "SignatureVerifier", "sign_digest", "sign_typed_message"):
        from tools.metatx import signature
        return getattr(signature, name)

    if name == "NonceRegistry":
        from tools.metatx import nonces
        return nonces.NonceRegistry

    if name in ("Ledger", "CallContext", "Contract", "TransactionReceipt"):
        from tools.metatx import ledger
        return getattr(ledger, name)

    if name in ("ActionResult", "ActionTarget", "TrustedForwarderMixin", "MessageCounter",
                "TokenLedger", "encode_function_call", "decode_function_call"):
        from tools.metatx import targets
        return getattr(targets, name)

    if name in ("ExecutionDispatcher", "ActionKind", "ActionSpec", "ActionRules",
                "DispatchState", "DispatchReceipt", "rules_for", "SIGNATURE_SCHEMA",
                "META_TX_SCHEMA", "FORWARD_REQUEST_SCHEMA"):
        from tools.metatx import dispatcher
        return getattr(dispatcher, name)

    if name in ("ValidationError", "ValidationErrors", "SecurityViolation",
                "InvariantViolation", "ExecutionReverted", "DispatchError",
                "InvalidSignature", "SignerMismatch", "ReplayOrInvalidNonce",
                "ActionFailed"):
        from tools.metatx import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'metatx' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Encoding
    "DomainContext",
    "MessageSchema",
    "TypedMessage",
    "TypedMessageCodec",
    # Authorization
    "Signature",
    "SignatureVerifier",
    "NonceRegistry",
    # Execution
    "Ledger",
    "CallContext",
    "ExecutionDispatcher",
    "ActionKind",
    "ActionSpec",
    "MessageCounter",
    "TokenLedger",
    # Errors
    "InvalidSignature",
    "SignerMismatch",
    "ReplayOrInvalidNonce",
    "ActionFailed",
]

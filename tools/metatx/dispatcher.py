"""
METATX Execution Dispatcher

Gatekeeper between a relayer's submission and the action target.

Every submission passes the same gates in the same order, and the first gate
that fails ends the dispatch:

    ┌──────────────┐   ┌──────────────┐   ┌──────────────┐   ┌──────────────┐
    │ 1. digest    │──▶│ 2. recover   │──▶│ 3. signer    │──▶│ 4. nonce     │
    │ live domain  │   │ principal    │   │ field match  │   │ consume      │
    └──────────────┘   └──────────────┘   └──────────────┘   └──────┬───────┘
                                                                     │
                       ┌──────────────┐   ┌──────────────┐          │
                       │ 6. receipt / │◀──│ 5. target    │◀─────────┘
                       │ ActionFailed │   │ call as P    │
                       └──────────────┘   └──────────────┘

Gates 4 to 6 run inside the ledger's atomic scope, so a rejected nonce or a
reverted target leaves both the nonce registry and the target unchanged.

Two action shapes exist, distinguished by ActionKind:

    SIGNED_MESSAGE     the message names its signer; fixed target; no nonce
    META_TRANSACTION   recovered identity acts; routed by ``to``; signed nonce

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from tools.metatx.config import get_config
from tools.metatx.domain import DomainContext
from tools.metatx.hardening import (
    ActionFailed,
    CryptoUtils,
    ExecutionReverted,
    InvalidSignature,
    InvariantChecker,
    InvariantViolation,
    ReplayOrInvalidNonce,
    SignerMismatch,
    ValidationError,
    ValidationErrors,
    Validators,
)
from tools.metatx.ledger import CallContext, Contract
from tools.metatx.nonces import NonceRegistry
from tools.metatx.observability import (
    AuditEventType,
    AuditLogger,
    Layer,
    correlation_id_var,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)
from tools.metatx.signature import Signature, SignatureVerifier
from tools.metatx.targets import ActionResult, ActionTarget
from tools.metatx.typed_data import MessageSchema, TypedMessage, TypedMessageCodec

logger = get_logger("dispatcher", Layer.DISPATCH)

SIGNER_FIELD = "signer"
FROM_FIELD = "from"
TO_FIELD = "to"
NONCE_FIELD = "nonce"


# =============================================================================
# STANDARD SCHEMAS
# =============================================================================

SIGNATURE_SCHEMA = MessageSchema.of("Signature", [
    ("signer", "address"),
    ("message", "string"),
])

META_TX_SCHEMA = MessageSchema.of("MetaTx", [
    ("from", "address"),
    ("to", "address"),
    ("value", "uint256"),
    ("nonce", "uint256"),
    ("data", "bytes"),
])

FORWARD_REQUEST_SCHEMA = MessageSchema.of("ForwardRequest", [
    ("from", "address"),
    ("to", "address"),
    ("value", "uint256"),
    ("nonce", "uint256"),
    ("data", "bytes"),
])


# =============================================================================
# ACTION KINDS
# =============================================================================

class ActionKind(Enum):
    """Shapes of authorization the dispatcher accepts."""
    SIGNED_MESSAGE = "signed_message"
    META_TRANSACTION = "meta_transaction"


@dataclass(frozen=True)
class ActionRules:
    """Gate configuration derived from an ActionKind and its schema."""
    signer_field: Optional[str]
    nonce_required: bool
    nonce_field: Optional[str]
    routing_field: Optional[str]
    excluded_fields: Tuple[str, ...]


def rules_for(kind: ActionKind, schema: MessageSchema) -> ActionRules:
    """The gates an action of ``kind`` with ``schema`` goes through."""
    if kind is ActionKind.SIGNED_MESSAGE:
        return ActionRules(
            signer_field=SIGNER_FIELD,
            nonce_required=False,
            nonce_field=None,
            routing_field=None,
            excluded_fields=(SIGNER_FIELD,),
        )
    if kind is ActionKind.META_TRANSACTION:
        signer_field = FROM_FIELD if schema.has_field(FROM_FIELD) else None
        return ActionRules(
            signer_field=signer_field,
            nonce_required=True,
            nonce_field=NONCE_FIELD,
            routing_field=TO_FIELD,
            excluded_fields=tuple(f for f in (signer_field, TO_FIELD, NONCE_FIELD) if f),
        )
    raise ValueError(f"Unknown action kind: {kind!r}")


@dataclass(frozen=True)
class ActionSpec:
    """Registration of one message schema with the dispatcher."""
    kind: ActionKind
    schema: MessageSchema
    target: Optional[ActionTarget] = None


def _check_action_spec(spec: ActionSpec, rules: ActionRules) -> None:
    schema = spec.schema
    name = schema.primary_type
    errors: List[ValidationError] = []

    if spec.kind is ActionKind.SIGNED_MESSAGE and not schema.has_field(SIGNER_FIELD):
        errors.append(ValidationError(name, f"Signed messages must declare a '{SIGNER_FIELD}' field"))
    if rules.signer_field and schema.has_field(rules.signer_field):
        if schema.field_type(rules.signer_field) != "address":
            errors.append(ValidationError(rules.signer_field, "Signer field must be of type address"))
    if rules.nonce_field:
        if not schema.has_field(rules.nonce_field):
            errors.append(ValidationError(name, f"Meta-transactions must sign a '{rules.nonce_field}' field"))
        elif not schema.field_type(rules.nonce_field).startswith("uint"):
            errors.append(ValidationError(rules.nonce_field, "Nonce field must be an unsigned integer"))

    if spec.target is None:
        if spec.kind is ActionKind.SIGNED_MESSAGE:
            errors.append(ValidationError(name, "Signed messages need a fixed target"))
        elif not schema.has_field(TO_FIELD) or schema.field_type(TO_FIELD) != "address":
            errors.append(ValidationError(name, f"Without a fixed target a '{TO_FIELD}' address field is required"))
    elif not callable(getattr(spec.target, "call", None)):
        errors.append(ValidationError("target", "Target does not accept calls", spec.target))

    if errors:
        raise ValidationErrors(errors)


# =============================================================================
# DISPATCH STATE MACHINE
# =============================================================================

class DispatchState(Enum):
    """States of a single dispatch."""
    IDLE = "idle"
    PENDING_VERIFICATION = "pending_verification"
    REJECTED = "rejected"
    VERIFIED = "verified"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    ACTION_FAILED = "action_failed"

    def is_terminal(self) -> bool:
        return self in (DispatchState.REJECTED, DispatchState.COMPLETED, DispatchState.ACTION_FAILED)


VALID_TRANSITIONS: Dict[DispatchState, Set[DispatchState]] = {
    DispatchState.IDLE: {DispatchState.PENDING_VERIFICATION},
    DispatchState.PENDING_VERIFICATION: {
        DispatchState.REJECTED,
        DispatchState.VERIFIED,
    },
    # The target is resolved after verification; an unresolvable target fails
    # the action before anything is dispatched.
    DispatchState.VERIFIED: {
        DispatchState.DISPATCHED,
        DispatchState.ACTION_FAILED,
    },
    DispatchState.DISPATCHED: {
        DispatchState.COMPLETED,
        DispatchState.ACTION_FAILED,
    },
    # Terminal states have no valid transitions
    DispatchState.REJECTED: set(),
    DispatchState.COMPLETED: set(),
    DispatchState.ACTION_FAILED: set(),
}


class _DispatchTrack:
    def __init__(self):
        self.state = DispatchState.IDLE
        self.transitions: List[Tuple[DispatchState, DispatchState]] = []

    def advance(self, target: DispatchState) -> None:
        InvariantChecker.check_state_transition(self.state, target, VALID_TRANSITIONS)
        self.transitions.append((self.state, target))
        self.state = target


@dataclass
class DispatchReceipt:
    """Result of a successful dispatch."""
    state: DispatchState
    kind: ActionKind
    principal: str
    digest: bytes
    nonce: Optional[int]
    result: ActionResult
    transitions: List[Tuple[DispatchState, DispatchState]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "kind": self.kind.value,
            "principal": self.principal,
            "digest": "0x" + self.digest.hex(),
            "nonce": self.nonce,
            "success": self.result.success,
            "transitions": [(a.value, b.value) for a, b in self.transitions],
        }


# =============================================================================
# DISPATCHER
# =============================================================================

class ExecutionDispatcher(Contract):
    """
    Verifies relayed authorizations and forwards them as the signer.

    The dispatcher is itself deployed on the ledger; its address is the
    ``verifyingContract`` of its domain and the trusted forwarder its targets
    recognise.
    """

    _journaled = ("_nonces",)

    def __init__(
        self,
        name: str,
        version: str,
        verifier: Optional[SignatureVerifier] = None,
        audit: Optional[AuditLogger] = None,
    ):
        super().__init__()
        self.name = Validators.validate_string(name, "name").unwrap()
        self.version = Validators.validate_string(version, "version").unwrap()
        self.verifier = verifier or SignatureVerifier()
        self.audit = audit if audit is not None else AuditLogger()
        self._nonces = NonceRegistry()
        self._actions: Dict[str, Tuple[ActionSpec, ActionRules]] = {}

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_action(self, spec: ActionSpec) -> ActionRules:
        """Accept messages of ``spec.schema`` under the rules of ``spec.kind``."""
        rules = rules_for(spec.kind, spec.schema)
        _check_action_spec(spec, rules)
        primary_type = spec.schema.primary_type
        if primary_type in self._actions:
            raise ValidationErrors([
                ValidationError("primaryType", f"Action already registered: {primary_type}")
            ])
        self._actions[primary_type] = (spec, rules)
        logger.info(
            "Action registered",
            primary_type=primary_type,
            kind=spec.kind.value,
            target=getattr(spec.target, "address", None),
        )
        return rules

    @property
    def actions(self) -> List[ActionSpec]:
        return [spec for spec, _ in self._actions.values()]

    def build_message(self, primary_type: str, values: Mapping[str, Any]) -> TypedMessage:
        """A TypedMessage for a registered primary type."""
        spec, _ = self._lookup(primary_type)
        return TypedMessage(spec.schema, values)

    def _lookup(self, primary_type: str) -> Tuple[ActionSpec, ActionRules]:
        try:
            return self._actions[primary_type]
        except KeyError:
            raise ValidationErrors([
                ValidationError("primaryType", f"No action registered for {primary_type}", primary_type)
            ]) from None

    # -------------------------------------------------------------------------
    # Read accessors
    # -------------------------------------------------------------------------

    @property
    def domain(self) -> DomainContext:
        """The live domain: own name/version, ledger chain id, own address."""
        if not self.deployed or self.ledger is None:
            raise InvariantViolation(f"Dispatcher {self.name} is not deployed")
        return DomainContext(
            name=self.name,
            version=self.version,
            chain_id=self.ledger.chain_id,
            verifying_contract=self.address,
        )

    def current_nonce(self, principal: str) -> int:
        return self._nonces.current_nonce(principal)

    def nonce_of(self, principal: str) -> int:
        return self.current_nonce(principal)

    def digest(self, message: TypedMessage) -> bytes:
        return TypedMessageCodec.digest(self.domain, message.schema, message)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def execute(
        self,
        ctx: CallContext,
        message: TypedMessage,
        signature: Union[Signature, bytes, str],
    ) -> DispatchReceipt:
        """
        Verify ``signature`` over ``message`` and perform the action as its signer.

        Each submission gets its own correlation id unless the caller already
        set one.
        """
        token = None
        if not correlation_id_var.get():
            token = set_correlation_id(generate_correlation_id())
        try:
            return self._dispatch(ctx, message, signature)
        finally:
            if token is not None:
                correlation_id_var.reset(token)

    @timed_operation(logger, "execute")
    def _dispatch(
        self,
        ctx: CallContext,
        message: TypedMessage,
        signature: Union[Signature, bytes, str],
    ) -> DispatchReceipt:
        spec, rules = self._lookup(message.primary_type)
        if message.schema != spec.schema:
            raise ValidationErrors([
                ValidationError("schema", f"Message schema differs from registered {message.primary_type}")
            ])

        track = _DispatchTrack()
        track.advance(DispatchState.PENDING_VERIFICATION)
        digest = self.digest(message)
        details = {"primary_type": message.primary_type, "digest": "0x" + digest.hex()}

        try:
            principal = self.verifier.recover_signer(digest, signature)
        except InvalidSignature as exc:
            track.advance(DispatchState.REJECTED)
            self._record(AuditEventType.SIGNATURE_INVALID, "", ctx, "rejected", details, exc)
            raise

        if rules.signer_field:
            claimed = message[rules.signer_field]
            if not CryptoUtils.same_address(principal, claimed):
                track.advance(DispatchState.REJECTED)
                exc = SignerMismatch(principal, claimed)
                self._record(AuditEventType.SIGNER_MISMATCH, principal, ctx, "rejected", details, exc)
                raise exc

        presented = message[rules.nonce_field] if rules.nonce_required else None

        with self.ledger.atomic():
            if rules.nonce_required:
                try:
                    self._nonces.consume(principal, presented)
                except ReplayOrInvalidNonce as exc:
                    track.advance(DispatchState.REJECTED)
                    self._record(AuditEventType.REPLAY_ATTEMPT, principal, ctx, "rejected", details, exc)
                    raise
            track.advance(DispatchState.VERIFIED)

            payload = {
                name: message[name]
                for name in spec.schema.field_names
                if name not in rules.excluded_fields
            }
            inner = CallContext(
                sender=self.address,
                origin=ctx.origin,
                acting_principal=principal,
                value=payload.get("value", 0),
            )

            try:
                target = self._resolve_target(spec, rules, message)
                track.advance(DispatchState.DISPATCHED)
                result = target.call(inner, payload)
            except ExecutionReverted as exc:
                track.advance(DispatchState.ACTION_FAILED)
                failure = ActionFailed(exc.reason)
                self._record(AuditEventType.ACTION_FAILED, principal, ctx, "failed", details, failure)
                raise failure from exc

            if not result.success:
                track.advance(DispatchState.ACTION_FAILED)
                failure = ActionFailed(result.error or "action reported failure")
                self._record(AuditEventType.ACTION_FAILED, principal, ctx, "failed", details, failure)
                raise failure
            track.advance(DispatchState.COMPLETED)

        self._record(AuditEventType.AUTH_SUCCESS, principal, ctx, "success", details)
        logger.info(
            "Dispatch completed",
            principal=principal,
            submitter=ctx.origin,
            primary_type=message.primary_type,
            nonce=presented if rules.nonce_required else None,
        )
        return DispatchReceipt(
            state=track.state,
            kind=spec.kind,
            principal=principal,
            digest=digest,
            nonce=presented if rules.nonce_required else None,
            result=result,
            transitions=track.transitions,
        )

    def _resolve_target(self, spec: ActionSpec, rules: ActionRules, message: TypedMessage) -> ActionTarget:
        if spec.target is not None:
            # Only state journaled by this ledger is rolled back with the nonce.
            address = getattr(spec.target, "address", None)
            if address is None or self.ledger.contract_at(address) is not spec.target:
                raise ExecutionReverted(f"target {address} is not deployed on this ledger")
            return spec.target
        destination = message[rules.routing_field]
        contract = self.ledger.contract_at(destination)
        if contract is None:
            raise ExecutionReverted(f"no contract deployed at {destination}")
        if contract is self or not callable(getattr(contract, "call", None)):
            raise ExecutionReverted(f"contract at {destination} does not accept forwarded calls")
        return contract

    def _record(
        self,
        event_type: AuditEventType,
        principal: str,
        ctx: CallContext,
        outcome: str,
        details: Dict[str, Any],
        exc: Optional[Exception] = None,
    ) -> None:
        if exc is not None:
            logger.warning(
                "Dispatch rejected" if outcome == "rejected" else "Dispatch failed",
                error_code=getattr(exc, "code", ""),
                principal=principal,
                submitter=ctx.origin,
                reason=str(exc),
            )
        if not get_config().observability.audit_enabled.get():
            return
        entry = dict(details)
        if exc is not None:
            entry["error_code"] = getattr(exc, "code", "")
            entry["reason"] = str(exc)
        self.audit.log(
            event_type=event_type,
            principal=principal,
            submitter=ctx.origin,
            resource_id=self.address or "",
            outcome=outcome,
            details=entry,
        )

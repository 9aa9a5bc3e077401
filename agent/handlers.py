from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Type, Union

from rich.console import Console

from agent.config import ClientConfig, ConfigError
from agent.signer import Signer, SignerError
from common.envelope import DecodeError, Envelope, create_envelope, decode_envelope, decode_payload
from common.log import get_logger, log_envelope
from common.payloads import (
    FullSigResponse,
    OperationType,
    PairingPayload,
    Payload,
    SigningNotice,
    SigningRequest,
)

logger = get_logger(__name__)

_console = Console()

# Type alias for handler functions
PayloadHandler = Callable[[Payload, "HandlerContext"], Optional[Envelope]]
Announcer = Callable[[str, Payload], None]


def console_announcer(text: str, payload: Payload) -> None:
    _console.print(text)


@dataclass
class HandlerContext:
    """What handlers may touch: client identity, the signer and the announcer."""
    config: ClientConfig
    signer: Signer
    announce: Announcer = console_announcer


@dataclass(frozen=True)
class Route:
    schema: Type[Payload]
    handler: PayloadHandler


# ========================================
#           PAYLOAD HANDLERS
# ========================================

def handle_pairing(payload: PairingPayload, ctx: HandlerContext) -> None:
    """Announce a newly paired peer device. No response."""
    ctx.announce(f"[bold cyan]Pairing[/]: device={payload.device_id} user={payload.user}", payload)
    logger.info("Pairing announced: device=%s user=%s", payload.device_id, payload.user)
    return None


def handle_signing_request(payload: SigningRequest, ctx: HandlerContext) -> Optional[Envelope]:
    """Complete a partial signature and answer with a FullSig envelope"""
    logger.info("Signing input: transaction=%s team=%s account=%s",
                payload.transaction_id, payload.team_id, payload.account_hash)
    try:
        sig = ctx.signer.sign_full(payload)
    except SignerError as e:
        logger.error("Cannot sign transaction %s: %s", payload.transaction_id, e)
        return None

    response = FullSigResponse(
        transaction_id=payload.transaction_id,
        team_id=payload.team_id,
        account_hash=payload.account_hash,
        signature_r=sig.r,
        signature_s=sig.s,
        signature_v=sig.v,
    )
    return create_envelope(
        OperationType.FULL_SIG.value,
        response,
        action=ctx.config.action,
        source_id=ctx.config.source_id,
    )


def handle_signing_notice(payload: SigningNotice, ctx: HandlerContext) -> None:
    ctx.announce(f"[bold yellow]Signed[/]: tx={payload.tx_id} signature={payload.signature}", payload)
    logger.info("Signing notice for tx %s", payload.tx_id)
    return None


# ========================================
#           SCHEMA PROFILES
# ========================================

@dataclass(frozen=True)
class SchemaProfile:
    """
    One deployment's discriminator -> schema mapping.

    Each signing shape is bound to exactly one discriminator, so a profile
    never accepts both variants under the same operationType.
    """
    name: str
    signing_operation: str
    signing_schema: Type[Payload]

    def routes(self) -> Dict[str, Route]:
        signing_handler = (handle_signing_request if self.signing_schema is SigningRequest
                           else handle_signing_notice)
        return {
            OperationType.PAIRING.value: Route(PairingPayload, handle_pairing),
            self.signing_operation: Route(self.signing_schema, signing_handler),
        }


PROFILES: Dict[str, SchemaProfile] = {
    "partial-sig": SchemaProfile("partial-sig", OperationType.PARTIAL_SIG.value, SigningRequest),
    "signing": SchemaProfile("signing", OperationType.SIGNING.value, SigningRequest),
    "notice": SchemaProfile("notice", OperationType.SIGNING.value, SigningNotice),
}


def get_profile(name: str, signing_operation: Optional[str] = None) -> SchemaProfile:
    try:
        profile = PROFILES[name]
    except KeyError:
        raise ConfigError(f"Unknown schema profile {name!r}; expected one of {', '.join(PROFILES)}")
    if signing_operation and signing_operation != profile.signing_operation:
        if signing_operation == OperationType.PAIRING.value:
            raise ConfigError("signing_operation cannot reuse the pairing discriminator")
        profile = SchemaProfile(profile.name, signing_operation, profile.signing_schema)
    return profile


# ========================================
#           DISPATCH
# ========================================

class Dispatcher:
    """Routes decoded envelopes to payload handlers by operationType."""

    def __init__(self, ctx: HandlerContext, profile: Optional[SchemaProfile] = None) -> None:
        self.ctx = ctx
        self.profile = profile or get_profile(ctx.config.profile, ctx.config.signing_operation)
        self.registry: Dict[str, Route] = self.profile.routes()

    def dispatch(self, envelope: Envelope) -> Optional[Envelope]:
        """Handle one envelope; returns the outbound envelope to send, if any."""
        route = self.registry.get(envelope.operation_type)
        if route is None:
            log_envelope(logger, "info", f"Unknown operation type: {envelope.operation_type}",
                         envelope=envelope)
            return None

        try:
            payload = decode_payload(envelope, route.schema)
        except DecodeError as e:
            log_envelope(logger, "error", f"{route.schema.__name__} decode error: {e}",
                         envelope=envelope)
            return None

        log_envelope(logger, "debug", "Dispatching", envelope=envelope)
        return route.handler(payload, self.ctx)

    def handle_frame(self, raw: Union[str, bytes]) -> Optional[Envelope]:
        """Decode a raw frame and dispatch it; malformed frames are logged and dropped."""
        try:
            envelope = decode_envelope(raw)
        except DecodeError as e:
            logger.error("Envelope decode error: %s", e)
            return None
        return self.dispatch(envelope)

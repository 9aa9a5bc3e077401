from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, TypeVar, Union, TYPE_CHECKING
import json

if TYPE_CHECKING:
    from common.payloads import Payload

P = TypeVar("P", bound="Payload")

# optional routing fields: wire name -> attribute name
_ROUTING_FIELDS = (
    ("action", "action"),
    ("sourceId", "source_id"),
    ("connectionId", "connection_id"),
)


class DecodeError(ValueError):
    """Raised when an inbound frame or its inner payload is malformed."""
    pass


@dataclass
class Envelope:
    """
    Outer wrapper of every frame exchanged with the coordinator:
    {
    "action":        "STRING (optional, e.g. sendServer)",
    "sourceId":      "STRING (optional, sender client id)",
    "connectionId":  "STRING (optional, server-side connection id)",
    "cliToMpc":      {"STRING": "STRING"} (optional),
    "operationType": "STRING",
    "message":       <JSON value, decoded once operationType is known>
    }
    """
    operation_type: str                      # Discriminator, case-sensitive
    message: Any = None                      # Raw inner payload, undecoded
    action: Optional[str] = None
    source_id: Optional[str] = None
    connection_id: Optional[str] = None
    cli_to_mpc: Optional[Dict[str, str]] = None

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'Envelope':
        """Parse a text or binary frame into an Envelope"""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise DecodeError(f"Frame is not valid UTF-8: {e}")
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # json.loads also raises for oversized integers and deep nesting
            raise DecodeError(f"Invalid JSON: {e}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'Envelope':
        """Create Envelope from dictionary, validating the outer fields only"""
        if not isinstance(data, dict):
            raise DecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")

        op = data.get('operationType')
        if op is None:
            raise DecodeError("Missing required field: 'operationType'")
        if not isinstance(op, str):
            raise DecodeError("'operationType' must be a string")

        routing: Dict[str, Optional[str]] = {}
        for wire_name, attr in _ROUTING_FIELDS:
            value = data.get(wire_name)
            if value is not None and not isinstance(value, str):
                raise DecodeError(f"'{wire_name}' must be a string")
            routing[attr] = value

        cli_to_mpc = data.get('cliToMpc')
        if cli_to_mpc is not None:
            if not isinstance(cli_to_mpc, dict):
                raise DecodeError("'cliToMpc' must be an object")
            if not all(isinstance(k, str) and isinstance(v, str) for k, v in cli_to_mpc.items()):
                raise DecodeError("'cliToMpc' must map strings to strings")

        return cls(
            operation_type=op,
            message=data.get('message'),
            cli_to_mpc=cli_to_mpc,
            **routing,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert Envelope back to dictionary, omitting unset optional fields"""
        result: Dict[str, Any] = {}
        for wire_name, attr in _ROUTING_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                result[wire_name] = value
        if self.cli_to_mpc is not None:
            result['cliToMpc'] = self.cli_to_mpc
        result['operationType'] = self.operation_type
        if self.message is not None:
            result['message'] = self.message
        return result

    def to_json(self) -> str:
        """Convert Envelope to a compact JSON string"""
        return json.dumps(self.to_dict(), separators=(',', ':'))


def decode_envelope(raw: Union[str, bytes]) -> Envelope:
    """Single outer decode of a frame; the inner payload is left untouched."""
    return Envelope.from_json(raw)


def decode_payload(envelope: Envelope, schema: Type[P]) -> P:
    """
    Decode the inner payload once the discriminator selected ``schema``.

    The message may be embedded as a JSON object or as a string that itself
    holds a JSON object.
    """
    message = envelope.message
    if message is None:
        raise DecodeError(f"'{envelope.operation_type}' envelope has no message")
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except (ValueError, RecursionError) as e:
            raise DecodeError(f"Invalid embedded JSON in message: {e}")
    return schema.from_dict(message)


def create_envelope(operation_type: str, payload: Optional["Payload"] = None, *,
                    action: Optional[str] = None, source_id: Optional[str] = None,
                    connection_id: Optional[str] = None) -> Envelope:
    """Helper to wrap an outbound payload"""
    return Envelope(
        operation_type=operation_type,
        message=payload.to_dict() if payload is not None else None,
        action=action,
        source_id=source_id,
        connection_id=connection_id,
    )

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Type, TypeVar

from common.envelope import DecodeError

P = TypeVar("P", bound="Payload")


class OperationType(str, Enum):
    """Known values of the envelope's operationType discriminator."""

    PAIRING = "pairing"              # Peer device pairing announcement
    SIGNING = "signing"              # Signing request/notice (deployment profile)
    PARTIAL_SIG = "PartialSig"       # Partial signature awaiting completion
    FULL_SIG = "FullSig"             # Completed signature sent back to the server

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if string is a known operation type."""
        try:
            cls(value)
            return True
        except ValueError:
            return False


@dataclass(frozen=True)
class Payload:
    """
    Base for inner message payloads.

    Subclasses list their wire field names in ``WIRE_FIELDS`` in dataclass
    field order; every wire field is a required string.
    """
    WIRE_FIELDS: ClassVar[tuple] = ()

    @classmethod
    def from_dict(cls: Type[P], data: Any) -> P:
        if not isinstance(data, dict):
            raise DecodeError(f"{cls.__name__} must be a JSON object, got {type(data).__name__}")
        values = []
        for wire_name in cls.WIRE_FIELDS:
            if wire_name not in data:
                raise DecodeError(f"{cls.__name__} missing field '{wire_name}'")
            value = data[wire_name]
            if not isinstance(value, str):
                raise DecodeError(f"{cls.__name__}.{wire_name} must be a string")
            values.append(value)
        return cls(*values)

    def to_dict(self) -> Dict[str, str]:
        return {
            wire_name: getattr(self, f.name)
            for wire_name, f in zip(self.WIRE_FIELDS, fields(self))
        }


@dataclass(frozen=True)
class PairingPayload(Payload):
    WIRE_FIELDS: ClassVar[tuple] = ("deviceId", "user")

    device_id: str
    user: str


@dataclass(frozen=True)
class SigningRequest(Payload):
    """Partial signature the client must turn into a full signature."""
    WIRE_FIELDS: ClassVar[tuple] = ("accountHash", "teamId", "transactionId", "partialSig")

    account_hash: str
    team_id: str
    transaction_id: str
    partial_sig: str


@dataclass(frozen=True)
class SigningNotice(Payload):
    """Signing notification; nothing is sent back."""
    WIRE_FIELDS: ClassVar[tuple] = ("txId", "signature")

    tx_id: str
    signature: str


@dataclass(frozen=True)
class FullSigResponse(Payload):
    WIRE_FIELDS: ClassVar[tuple] = (
        "transactionId",
        "teamId",
        "accountHash",
        "signatureR",
        "signatureS",
        "signatureV",
    )

    transaction_id: str
    team_id: str
    account_hash: str
    signature_r: str
    signature_s: str
    signature_v: str

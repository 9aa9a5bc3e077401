# Full-signature production for signing requests

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass

from common.log import get_logger
from common.payloads import SigningRequest

logger = get_logger(__name__)


class SignerError(Exception):
    """Raised when a full signature cannot be produced for one request."""
    pass


@dataclass(frozen=True)
class FullSignature:
    r: str
    s: str
    v: str


class Signer(ABC):
    """Abstract base class for full-signature producers"""
    @abstractmethod
    def sign_full(self, request: SigningRequest) -> FullSignature:
        """Turn a partial signature request into a full signature"""
        ...


class PlaceholderSigner(Signer):
    """Returns fixed r/s/v values; stands in until a real signing backend is wired up."""

    def __init__(self) -> None:
        logger.warning("No signing backend configured; FullSig responses carry placeholder signatures")

    def sign_full(self, request: SigningRequest) -> FullSignature:
        return FullSignature(r="r", s="s", v="v")

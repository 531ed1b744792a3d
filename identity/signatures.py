"""
Schnorr Signatures over Baby Jubjub
===================================
Fiat-Shamir Schnorr with SHA-256 challenges:

    r = H(BE32(sk) || m)              mod l   (deterministic nonce)
    R = r * G
    t = H(BE32(R.x) || BE32(pk.x) || m) mod l
    s = r + sk * t                    mod l

Verification checks  s*G == R + t*pk.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from cryptography.hazmat.primitives import constant_time

from curve.babyjubjub import (
    CurveContext,
    InvalidPointError,
    Point,
    Scalar,
    int_to_bytes32,
)
from .key_derivation import IdentityError

logger = logging.getLogger(__name__)


class SignatureError(IdentityError):
    """Malformed signature encoding"""
    pass


@dataclass(frozen=True)
class Signature:
    """Schnorr signature (R, s)"""
    R: Point
    s: Scalar

    def to_dict(self) -> Dict[str, Any]:
        return {'R': self.R.to_dict(), 's': str(self.s.value)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, curve: CurveContext, data: Dict[str, Any]) -> 'Signature':
        """Strictly decode a signature; raises SignatureError on any defect"""
        if not isinstance(data, dict) or 'R' not in data or 's' not in data:
            raise SignatureError("Signature must contain R and s")

        try:
            R = curve.point_from_dict(data['R'])
        except InvalidPointError as e:
            raise SignatureError(f"Invalid commitment point R: {e}") from e

        try:
            s_value = int(data['s'])
        except (TypeError, ValueError) as e:
            raise SignatureError(f"Non-integer s: {e}") from e

        if not 0 <= s_value < curve.order:
            raise SignatureError("s outside the scalar range")

        return cls(R=R, s=curve.scalar(s_value))

    @classmethod
    def from_json(cls, curve: CurveContext, encoded: str) -> 'Signature':
        try:
            data = json.loads(encoded)
        except (TypeError, ValueError) as e:
            raise SignatureError(f"Signature is not valid JSON: {e}") from e
        return cls.from_dict(curve, data)


class SchnorrSigner:
    """Stateless Schnorr sign / verify bound to a curve context"""

    def __init__(self, curve: CurveContext):
        self.curve = curve

    def _challenge(self, R: Point, pk: Point, message: bytes) -> Scalar:
        return self.curve.hash_to_scalar(
            int_to_bytes32(R.x), int_to_bytes32(pk.x), message)

    def sign(self, sk: Scalar, message: bytes) -> Signature:
        if sk.is_zero():
            raise ValueError("Cannot sign with a zero private key")

        message = _as_bytes(message)
        pk = self.curve.base_multiply(sk)

        r = self.curve.hash_to_scalar(sk.to_bytes(), message)
        R = self.curve.base_multiply(r)
        t = self._challenge(R, pk, message)
        s = r + sk * t

        return Signature(R=R, s=s)

    def verify(self, pk: Point, message: bytes,
               signature: Union[Signature, Dict[str, Any], str]) -> bool:
        """Return True only for a well-formed, valid signature"""
        try:
            if isinstance(signature, str):
                signature = Signature.from_json(self.curve, signature)
            elif isinstance(signature, dict):
                signature = Signature.from_dict(self.curve, signature)
            elif not isinstance(signature, Signature):
                raise SignatureError(
                    f"Unsupported signature type {type(signature).__name__}")
        except SignatureError as e:
            logger.debug(f"Rejected malformed signature: {e}")
            return False

        if not self.curve.is_on_curve(pk):
            logger.debug("Rejected signature for off-curve public key")
            return False

        message = _as_bytes(message)
        t = self._challenge(signature.R, pk, message)

        lhs = self.curve.base_multiply(signature.s)
        rhs = self.curve.add(signature.R, self.curve.multiply(pk, t))

        return constant_time.bytes_eq(lhs.to_bytes(), rhs.to_bytes())


def _as_bytes(message: Union[bytes, str]) -> bytes:
    if isinstance(message, str):
        return message.encode('utf-8')
    if isinstance(message, (bytes, bytearray)):
        return bytes(message)
    raise TypeError("Message must be bytes or str")


def vote_message(election_id: str, choice: str, timestamp: int) -> bytes:
    """Canonical vote message"""
    return f"{election_id}:{choice}:{timestamp}".encode('utf-8')


def authority_action_message(action: str, election_id: str) -> bytes:
    """Canonical message an election authority signs to authorize an action"""
    return f"authority:{action}:{election_id}".encode('utf-8')

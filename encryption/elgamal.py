"""
ElGamal Encryption in the Exponent
==================================
    c1 = r * G
    c2 = r * pk_recipient + m * G        m in {0, 1}

Randomness may be ephemeral or deterministically re-derived from the
sender's key material (``deterministic_r``). The deterministic form trades
per-encryption freshness for reproducibility: the sender can rebuild the
exact ciphertext later without storing ``r``. Unlinkability of such
ciphertexts then rests entirely on the discrete-log assumption.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from curve.babyjubjub import (
    CurveContext,
    InvalidPointError,
    Point,
    Scalar,
    int_to_bytes32,
)

logger = logging.getLogger(__name__)

VALID_PLAINTEXTS = (0, 1)


class EncryptionError(Exception):
    """Base exception for ElGamal operations"""
    pass


class InvalidPlaintextError(EncryptionError, ValueError):
    """Plaintext outside {0, 1}"""
    pass


class InvalidRandomnessError(EncryptionError, ValueError):
    """Encryption randomness is unusable"""
    pass


class MalformedCiphertextError(EncryptionError, ValueError):
    """Stored ciphertext failed schema validation"""
    pass


@dataclass(frozen=True)
class ElGamalCiphertext:
    """Pair of curve points (c1, c2)"""
    c1: Point
    c2: Point

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {'c1': self.c1.to_dict(), 'c2': self.c2.to_dict()}

    def as_circuit_vector(self) -> List[str]:
        """[c1.x, c1.y, c2.x, c2.y] as decimal strings"""
        return [str(self.c1.x), str(self.c1.y), str(self.c2.x), str(self.c2.y)]

    @classmethod
    def from_dict(cls, curve: CurveContext, data: Any) -> 'ElGamalCiphertext':
        """
        Strict deserialization of a stored ciphertext.

        Accepts exactly the shape written by ``to_dict``; anything else
        (missing components, non-numeric coordinates, off-curve points)
        raises MalformedCiphertextError before reaching arithmetic.
        """
        if not isinstance(data, dict):
            raise MalformedCiphertextError(
                f"Ciphertext must be an object, got {type(data).__name__}")

        components = {}
        for name in ('c1', 'c2'):
            part = data.get(name)
            if not isinstance(part, dict) or set(part.keys()) != {'x', 'y'}:
                raise MalformedCiphertextError(
                    f"Ciphertext component {name} must have exactly x and y")
            for coord in ('x', 'y'):
                value = part[coord]
                if isinstance(value, bool) or not isinstance(value, (int, str)):
                    raise MalformedCiphertextError(
                        f"{name}.{coord} must be an integer or decimal string")
                if isinstance(value, str) and not value.isdigit():
                    raise MalformedCiphertextError(
                        f"{name}.{coord} is not a decimal string")
            try:
                components[name] = curve.point(part['x'], part['y'])
            except InvalidPointError as e:
                raise MalformedCiphertextError(f"{name}: {e}") from e

        return cls(c1=components['c1'], c2=components['c2'])


def validate_plaintext(message: Any) -> int:
    if isinstance(message, bool) or not isinstance(message, int) or message not in VALID_PLAINTEXTS:
        raise InvalidPlaintextError(
            f"Plaintext must be 0 or 1, got {message!r}")
    return message


class ElGamal:
    """ElGamal-in-the-exponent over a curve context"""

    def __init__(self, curve: CurveContext):
        self.curve = curve

    def encrypt(self, recipient_pk: Point, message: int, r: Scalar) -> ElGamalCiphertext:
        message = validate_plaintext(message)

        if not self.curve.is_on_curve(recipient_pk):
            raise InvalidPointError("Recipient public key is not on the curve")
        if r.is_zero():
            raise InvalidRandomnessError(
                "Zero randomness would expose the plaintext")

        c1 = self.curve.base_multiply(r)
        shared = self.curve.multiply(recipient_pk, r)
        encoded = self.curve.base_multiply(self.curve.scalar(message))
        c2 = self.curve.add(shared, encoded)

        return ElGamalCiphertext(c1=c1, c2=c2)

    def encrypt_ephemeral(self, recipient_pk: Point, message: int) -> ElGamalCiphertext:
        """Encrypt with fresh randomness that is discarded after use"""
        return self.encrypt(recipient_pk, message, self.curve.random_scalar())

    def deterministic_r(self, sk: Scalar, pk: Point) -> Scalar:
        """r = H(BE32(sk) || BE32(pk.x) || BE32(pk.y)) mod l"""
        r = self.curve.hash_to_scalar(
            sk.to_bytes(), int_to_bytes32(pk.x), int_to_bytes32(pk.y))
        if r.is_zero():
            raise InvalidRandomnessError("Derived randomness reduced to zero")
        return r

    def decrypt_point(self, ciphertext: ElGamalCiphertext, sk: Scalar) -> Point:
        """Recover m*G = c2 - sk*c1"""
        shared = self.curve.multiply(ciphertext.c1, sk)
        return self.curve.add(ciphertext.c2, self.curve.negate(shared))

    def decrypt_bit(self, ciphertext: ElGamalCiphertext, sk: Scalar) -> Optional[int]:
        """Decrypt a single, non-aggregated ciphertext to 0 or 1"""
        point = self.decrypt_point(ciphertext, sk)
        if self.curve.is_identity(point):
            return 0
        if self.curve.equals(point, self.curve.base()):
            return 1
        return None

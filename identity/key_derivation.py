"""
Deterministic Key Derivation
============================
Derives a voter's Baby Jubjub keypair from an opaque 32-byte secret:

    sk = SHA256(secret || "babyjubjub") mod SUBGROUP_ORDER
    pk = sk * G

The private scalar is re-derived whenever it is needed and is never
persisted. Only ``pk`` (and values derived from it) leave the process.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Union

from cryptography.hazmat.primitives import constant_time

from curve.babyjubjub import (
    CurveContext,
    Point,
    Scalar,
    int_to_bytes32,
)

logger = logging.getLogger(__name__)

# Domain separator for key derivation; matches keys derived by existing clients
KEY_DERIVATION_DOMAIN = b"babyjubjub"

SECRET_LENGTH = 32

NULLIFIER_DOMAIN = b"nullifier:"


class IdentityError(Exception):
    """Base exception for identity operations"""
    pass


class DerivationError(IdentityError):
    """Secret could not be turned into a usable keypair"""
    pass


class KeyIntegrityError(IdentityError):
    """Derived keypair failed its self-consistency check"""
    pass


@dataclass(frozen=True)
class DerivedKeypair:
    """Keypair derived from a secret. ``sk`` must never be stored."""
    sk: Scalar = field(repr=False)
    pk: Point

    def public_key_strings(self) -> Dict[str, str]:
        return public_key_to_strings(self.pk)


def derive_keypair(curve: CurveContext, secret: bytes) -> DerivedKeypair:
    """
    Derive (sk, pk) from a 32-byte secret.

    Raises:
        DerivationError: secret has the wrong length or reduces to zero
        KeyIntegrityError: the derived public key fails the self-check
    """
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != SECRET_LENGTH:
        raise DerivationError(
            f"Secret must be exactly {SECRET_LENGTH} bytes")

    sk = curve.hash_to_scalar(bytes(secret), KEY_DERIVATION_DOMAIN)
    if sk.is_zero():
        raise DerivationError(
            "Derived private key is zero; request a new secret")

    pk = curve.base_multiply(sk)
    if not curve.is_on_curve(pk):
        raise KeyIntegrityError("Derived public key is not on curve")

    ensure_keypair_integrity(curve, sk, pk)

    logger.debug("Keypair derived successfully")
    return DerivedKeypair(sk=sk, pk=pk)


def verify_keypair(curve: CurveContext, sk: Scalar, pk: Point) -> bool:
    """Check that pk == sk * G"""
    expected = curve.base_multiply(sk)
    return constant_time.bytes_eq(expected.to_bytes(), pk.to_bytes())


def ensure_keypair_integrity(curve: CurveContext, sk: Scalar, pk: Point):
    """Abort the flow if the keypair is inconsistent"""
    if not verify_keypair(curve, sk, pk):
        raise KeyIntegrityError(
            "Keypair self-check failed: pk != sk*G")


def hash_signal(pk: Point) -> bytes:
    """SHA256(BE32(pk.x) || BE32(pk.y)); binds an identity proof to the key"""
    return hashlib.sha256(int_to_bytes32(pk.x) + int_to_bytes32(pk.y)).digest()


def signal_hex(pk: Point) -> str:
    """0x-prefixed hex signal handed to the identity oracle"""
    return "0x" + hash_signal(pk).hex()


def vote_nullifier(sk: Scalar, election_id: str) -> str:
    """
    Per-election double-vote guard.

    Deterministic for (voter, election) and not linkable to ``pk`` without
    the private scalar.
    """
    digest = hashlib.sha256(
        sk.to_bytes() + NULLIFIER_DOMAIN + election_id.encode('utf-8'))
    return digest.hexdigest()


def public_key_to_strings(pk: Point) -> Dict[str, str]:
    return {'x': str(pk.x), 'y': str(pk.y)}


def strings_to_public_key(curve: CurveContext, data: Union[Dict[str, str], Dict[str, int]]) -> Point:
    """Parse a stored public key; raises InvalidPointError for anything off the curve"""
    return curve.point_from_dict(data)

"""Voter identity: deterministic key derivation and Schnorr signatures."""

from .key_derivation import (
    DerivedKeypair,
    derive_keypair,
    verify_keypair,
    ensure_keypair_integrity,
    hash_signal,
    signal_hex,
    vote_nullifier,
    public_key_to_strings,
    strings_to_public_key,
    IdentityError,
    DerivationError,
    KeyIntegrityError,
)
from .signatures import (
    Signature,
    SchnorrSigner,
    SignatureError,
    vote_message,
    authority_action_message,
)

__all__ = [
    'DerivedKeypair',
    'derive_keypair',
    'verify_keypair',
    'ensure_keypair_integrity',
    'hash_signal',
    'signal_hex',
    'vote_nullifier',
    'public_key_to_strings',
    'strings_to_public_key',
    'IdentityError',
    'DerivationError',
    'KeyIntegrityError',
    'Signature',
    'SchnorrSigner',
    'SignatureError',
    'vote_message',
    'authority_action_message',
]

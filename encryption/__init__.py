"""ElGamal-in-the-exponent encryption and homomorphic tally primitives."""

from .elgamal import (
    ElGamal,
    ElGamalCiphertext,
    validate_plaintext,
    EncryptionError,
    InvalidPlaintextError,
    InvalidRandomnessError,
    MalformedCiphertextError,
)
from .homomorphic import (
    DiscreteLogTable,
    add_ciphertexts,
    negate_ciphertext,
    subtract_ciphertexts,
    decrypt_in_exponent,
    discrete_log_bound,
)

__all__ = [
    'ElGamal',
    'ElGamalCiphertext',
    'validate_plaintext',
    'EncryptionError',
    'InvalidPlaintextError',
    'InvalidRandomnessError',
    'MalformedCiphertextError',
    'DiscreteLogTable',
    'add_ciphertexts',
    'negate_ciphertext',
    'subtract_ciphertexts',
    'decrypt_in_exponent',
    'discrete_log_bound',
]

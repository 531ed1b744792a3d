"""
Zero-Knowledge Proof Module for the nullification circuit
Groth16 proofs generated in parallel on a bounded worker pool
"""

from .zk_proofs import (
    # Core classes
    ProofOrchestrator,
    NullificationProver,
    SnarkjsProver,
    ProofInput,
    ProofResult,
    build_circuit_inputs,

    # Exceptions
    ZKError,
    ProofGenerationError,
    ProofVerificationError,
)

__all__ = [
    # Classes
    'ProofOrchestrator',
    'NullificationProver',
    'SnarkjsProver',
    'ProofInput',
    'ProofResult',
    'build_circuit_inputs',

    # Exceptions
    'ZKError',
    'ProofGenerationError',
    'ProofVerificationError',
]

"""
Curve Arithmetic Module
Baby Jubjub twisted Edwards arithmetic with an injectable curve context
"""

from .babyjubjub import (
    # Core classes
    CurveContext,
    CurveParameters,
    Point,
    Scalar,
    BABYJUBJUB,

    # Helpers
    mod_inverse,
    int_to_bytes32,
    sha256_int,

    # Exceptions
    CurveError,
    InvalidPointError,
    CurveArithmeticError,
)

__all__ = [
    'CurveContext',
    'CurveParameters',
    'Point',
    'Scalar',
    'BABYJUBJUB',
    'mod_inverse',
    'int_to_bytes32',
    'sha256_int',
    'CurveError',
    'InvalidPointError',
    'CurveArithmeticError',
]

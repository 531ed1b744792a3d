"""
Baby Jubjub Twisted Edwards Curve Arithmetic
============================================
Affine point arithmetic over the Baby Jubjub curve

    a*x^2 + y^2 = 1 + d*x^2*y^2  (mod FIELD_PRIME)

used for key derivation, ElGamal encryption and Schnorr signatures.

Two moduli are in play and they are never mixed:
- coordinates live in the base field (FIELD_PRIME)
- scalars live in the prime-order subgroup (SUBGROUP_ORDER) and are
  represented by the dedicated ``Scalar`` type

There is no module-level curve instance. Every component receives an
explicitly constructed ``CurveContext``.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Tuple, Union

logger = logging.getLogger(__name__)

# ============================================================================
# CURVE PARAMETERS
# ============================================================================

# BN254 scalar field, the base field of Baby Jubjub
FIELD_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# Order of the prime subgroup generated by BASE8 (full curve order / 8)
SUBGROUP_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

CURVE_A = 168700
CURVE_D = 168696

# Prime-order generator (circomlib "Base8")
BASE8 = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)

SCALAR_BYTES = 32


# ============================================================================
# EXCEPTIONS
# ============================================================================


class CurveError(Exception):
    """Base exception for curve operations"""
    pass


class InvalidPointError(CurveError, ValueError):
    """Point does not satisfy the curve equation"""
    pass


class CurveArithmeticError(CurveError, ArithmeticError):
    """Field arithmetic failed (missing inverse); indicates corrupted input or a bug"""
    pass


# ============================================================================
# BYTE / FIELD UTILITIES
# ============================================================================


def mod_inverse(a: int, m: int) -> int:
    """Modular inverse of ``a`` mod ``m``; raises CurveArithmeticError if none exists"""
    try:
        return pow(a % m, -1, m)
    except ValueError as e:
        raise CurveArithmeticError(f"No modular inverse: {e}") from e


def int_to_bytes32(value: int) -> bytes:
    """Encode a non-negative integer as 32 big-endian bytes"""
    if value < 0:
        raise ValueError("Cannot encode negative integer")
    return value.to_bytes(SCALAR_BYTES, 'big')


def sha256_int(*parts: bytes) -> int:
    """SHA-256 over the concatenation of ``parts``, read as a big-endian integer"""
    digest = hashlib.sha256(b''.join(parts)).digest()
    return int.from_bytes(digest, 'big')


# ============================================================================
# VALUE TYPES
# ============================================================================


@dataclass(frozen=True)
class CurveParameters:
    """Domain parameters of a twisted Edwards curve"""
    name: str
    field_prime: int
    subgroup_order: int
    a: int
    d: int
    base_x: int
    base_y: int


BABYJUBJUB = CurveParameters(
    name="babyjubjub",
    field_prime=FIELD_PRIME,
    subgroup_order=SUBGROUP_ORDER,
    a=CURVE_A,
    d=CURVE_D,
    base_x=BASE8[0],
    base_y=BASE8[1],
)


@dataclass(frozen=True)
class Scalar:
    """Element of Z_order. Always reduced; never interchangeable with a field element."""
    value: int
    order: int

    def __post_init__(self):
        object.__setattr__(self, 'value', self.value % self.order)

    def _check(self, other: 'Scalar') -> 'Scalar':
        if not isinstance(other, Scalar):
            raise TypeError(
                f"Scalar arithmetic requires Scalar operands, got {type(other).__name__}")
        if other.order != self.order:
            raise TypeError("Scalars from different groups cannot be combined")
        return other

    def __add__(self, other: 'Scalar') -> 'Scalar':
        other = self._check(other)
        return Scalar(self.value + other.value, self.order)

    def __sub__(self, other: 'Scalar') -> 'Scalar':
        other = self._check(other)
        return Scalar(self.value - other.value, self.order)

    def __mul__(self, other: 'Scalar') -> 'Scalar':
        other = self._check(other)
        return Scalar(self.value * other.value, self.order)

    def __neg__(self) -> 'Scalar':
        return Scalar(-self.value, self.order)

    def is_zero(self) -> bool:
        return self.value == 0

    def to_bytes(self) -> bytes:
        return int_to_bytes32(self.value)

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)

    def __repr__(self) -> str:
        # Scalars are frequently secret; never print the value
        return f"Scalar(<{self.order.bit_length()}-bit>)"


@dataclass(frozen=True)
class Point:
    """Affine curve point. Coordinates are field elements reduced mod the field prime."""
    x: int
    y: int

    def to_dict(self) -> dict:
        return {'x': str(self.x), 'y': str(self.y)}

    def as_tuple(self) -> Tuple[int, int]:
        return (self.x, self.y)

    def to_bytes(self) -> bytes:
        return int_to_bytes32(self.x) + int_to_bytes32(self.y)

    def __str__(self) -> str:
        return f"({self.x}, {self.y})"


# ============================================================================
# CURVE CONTEXT
# ============================================================================


class CurveContext:
    """
    Explicitly constructed curve instance.

    All group operations go through a context so that components never
    depend on hidden global state.

    Scalar multiplication contract: ``multiply`` only accepts ``Scalar``
    values, which are reduced modulo the subgroup order at construction.
    Callers turning raw integers (hash outputs, decoded strings) into
    scalars must do so via ``scalar()`` / ``hash_to_scalar()``, which is
    where the reduction happens. ``multiply`` itself never reduces.
    """

    def __init__(self, params: CurveParameters = BABYJUBJUB):
        self.params = params
        self.p = params.field_prime
        self.order = params.subgroup_order
        self.a = params.a % self.p
        self.d = params.d % self.p

        self._identity = Point(0, 1)
        self._base = Point(params.base_x % self.p, params.base_y % self.p)

        if not self.is_on_curve(self._base):
            raise InvalidPointError(
                f"Base point is not on curve {params.name}")

        logger.debug(f"Curve context created for {params.name}")

    @classmethod
    def babyjubjub(cls) -> 'CurveContext':
        return cls(BABYJUBJUB)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    def identity(self) -> Point:
        return self._identity

    def base(self) -> Point:
        return self._base

    def point(self, x: Union[int, str], y: Union[int, str]) -> Point:
        """Build a point from external data, enforcing the on-curve check"""
        try:
            xi = int(x)
            yi = int(y)
        except (TypeError, ValueError) as e:
            raise InvalidPointError(f"Non-integer coordinate: {e}") from e

        if not (0 <= xi < self.p and 0 <= yi < self.p):
            raise InvalidPointError("Coordinate outside the base field")

        candidate = Point(xi, yi)
        if not self.is_on_curve(candidate):
            raise InvalidPointError("Point is not on the curve")
        return candidate

    def point_from_dict(self, data: dict) -> Point:
        if not isinstance(data, dict) or 'x' not in data or 'y' not in data:
            raise InvalidPointError("Point must be an object with x and y")
        return self.point(data['x'], data['y'])

    def scalar(self, value: int) -> Scalar:
        """Reduce an integer into the scalar group"""
        if isinstance(value, Scalar):
            if value.order != self.order:
                raise TypeError("Scalar belongs to a different group")
            return value
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(
                f"Scalar requires an int, got {type(value).__name__}")
        return Scalar(value, self.order)

    def hash_to_scalar(self, *parts: bytes) -> Scalar:
        """SHA-256 of the concatenated parts, reduced mod the subgroup order"""
        return Scalar(sha256_int(*parts), self.order)

    def random_scalar(self) -> Scalar:
        """Uniform non-zero scalar from the OS CSPRNG"""
        return Scalar(secrets.randbelow(self.order - 1) + 1, self.order)

    # ------------------------------------------------------------------
    # Group law
    # ------------------------------------------------------------------

    def is_on_curve(self, point: Point) -> bool:
        p = self.p
        x2 = (point.x * point.x) % p
        y2 = (point.y * point.y) % p
        left = (self.a * x2 + y2) % p
        right = (1 + self.d * x2 * y2) % p
        return left == right

    def add(self, P: Point, Q: Point) -> Point:
        """Unified twisted Edwards addition"""
        p = self.p
        x1, y1 = P.x, P.y
        x2, y2 = Q.x, Q.y

        x1x2 = (x1 * x2) % p
        y1y2 = (y1 * y2) % p
        dxxyy = (self.d * x1x2 * y1y2) % p

        x3_num = (x1 * y2 + y1 * x2) % p
        y3_num = (y1y2 - self.a * x1x2) % p

        x3 = (x3_num * mod_inverse(1 + dxxyy, p)) % p
        y3 = (y3_num * mod_inverse(1 - dxxyy, p)) % p

        return Point(x3, y3)

    def negate(self, P: Point) -> Point:
        """-(x, y) = (-x, y) on twisted Edwards curves"""
        return Point((-P.x) % self.p, P.y)

    def subtract(self, P: Point, Q: Point) -> Point:
        return self.add(P, self.negate(Q))

    def double(self, P: Point) -> Point:
        return self.add(P, P)

    def multiply(self, P: Point, scalar: Scalar) -> Point:
        """Double-and-add over the bits of an already reduced scalar"""
        if not isinstance(scalar, Scalar):
            raise TypeError(
                "multiply() requires a Scalar; reduce raw integers with CurveContext.scalar()")
        if scalar.order != self.order:
            raise TypeError("Scalar belongs to a different group")

        result = self._identity
        addend = P
        k = scalar.value

        while k > 0:
            if k & 1:
                result = self.add(result, addend)
            addend = self.add(addend, addend)
            k >>= 1

        return result

    def base_multiply(self, scalar: Scalar) -> Point:
        return self.multiply(self._base, scalar)

    def equals(self, P: Point, Q: Point) -> bool:
        return P.x % self.p == Q.x % self.p and P.y % self.p == Q.y % self.p

    def is_identity(self, P: Point) -> bool:
        return self.equals(P, self._identity)

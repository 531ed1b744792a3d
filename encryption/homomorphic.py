"""
Homomorphic Tally Primitives
============================
Component-wise addition of ElGamal ciphertexts and bounded discrete-log
recovery of the aggregated plaintext.

The lookup table maps {0*G, 1*G, ..., max_value*G} to integers. It is built
once per tally session, never mutated afterwards, and may be shared across
threads.
"""

import logging
import time
from types import MappingProxyType
from typing import Iterable, Optional

from curve.babyjubjub import CurveContext, Point, Scalar
from .elgamal import ElGamalCiphertext

logger = logging.getLogger(__name__)


def add_ciphertexts(curve: CurveContext, ciphertexts: Iterable[ElGamalCiphertext]) -> ElGamalCiphertext:
    """Sum ciphertexts; the result is independent of input order"""
    items = list(ciphertexts)
    if not items:
        raise ValueError("Cannot add an empty list of ciphertexts")

    c1 = curve.identity()
    c2 = curve.identity()
    for ct in items:
        c1 = curve.add(c1, ct.c1)
        c2 = curve.add(c2, ct.c2)

    return ElGamalCiphertext(c1=c1, c2=c2)


def negate_ciphertext(curve: CurveContext, ciphertext: ElGamalCiphertext) -> ElGamalCiphertext:
    return ElGamalCiphertext(
        c1=curve.negate(ciphertext.c1),
        c2=curve.negate(ciphertext.c2),
    )


def subtract_ciphertexts(curve: CurveContext, a: ElGamalCiphertext, b: ElGamalCiphertext) -> ElGamalCiphertext:
    return add_ciphertexts(curve, [a, negate_ciphertext(curve, b)])


class DiscreteLogTable:
    """Read-only map from n*G to n for 0 <= n <= max_value"""

    def __init__(self, curve: CurveContext, max_value: int):
        if max_value < 0:
            raise ValueError("max_value must be non-negative")

        self.curve = curve
        self.max_value = max_value

        start = time.time()
        entries = {}
        current = curve.identity()
        G = curve.base()
        for n in range(max_value + 1):
            entries[current.as_tuple()] = n
            if n < max_value:
                current = curve.add(current, G)

        self._entries = MappingProxyType(entries)
        logger.info(
            f"Built discrete log table for 0..{max_value} in {time.time() - start:.3f}s")

    def lookup(self, point: Point) -> Optional[int]:
        return self._entries.get(point.as_tuple())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, point: Point) -> bool:
        return point.as_tuple() in self._entries


def decrypt_in_exponent(curve: CurveContext,
                        ciphertext: ElGamalCiphertext,
                        authority_sk: Scalar,
                        table: DiscreteLogTable) -> Optional[int]:
    """
    Decrypt an aggregated ciphertext to its small integer plaintext.

    M = c2 + (-(sk * c1)); returns None when M is outside the table, which
    signals a corrupted aggregate or an undersized bound.
    """
    shared = curve.multiply(ciphertext.c1, authority_sk)
    M = curve.add(ciphertext.c2, curve.negate(shared))

    value = table.lookup(M)
    if value is None:
        logger.warning(
            f"Decrypted point not found in discrete log table (bound {table.max_value})")
    return value


def discrete_log_bound(k: int, max_rounds: int, override: Optional[int] = None) -> int:
    """
    Upper bound on any single participant's aggregated plaintext.

    Only the participant's own real slot ever encrypts 1, and each round
    contributes at most one ciphertext per target, so k * max_rounds is a
    strict over-approximation kept small enough to tabulate.
    """
    if override is not None:
        if override < 1:
            raise ValueError("discrete log bound must be positive")
        return override
    if k < 1 or max_rounds < 1:
        raise ValueError("k and max_rounds must be positive")
    return k * max_rounds

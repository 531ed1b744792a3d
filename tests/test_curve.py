import pytest

from curve.babyjubjub import (
    BABYJUBJUB,
    CurveArithmeticError,
    CurveContext,
    InvalidPointError,
    Point,
    Scalar,
    int_to_bytes32,
    mod_inverse,
)


def test_base_point_has_subgroup_order(curve):
    G = curve.base()
    assert curve.is_on_curve(G)
    almost = curve.base_multiply(curve.scalar(curve.order - 1))
    assert curve.is_identity(curve.add(almost, G))


def test_identity_is_neutral(curve):
    G = curve.base()
    assert curve.add(G, curve.identity()) == G
    assert curve.add(curve.identity(), G) == G


def test_addition_closure(curve):
    P = curve.base_multiply(curve.scalar(12345))
    Q = curve.base_multiply(curve.scalar(987654321))
    assert curve.is_on_curve(curve.add(P, Q))
    assert curve.is_on_curve(curve.double(P))


def test_addition_is_commutative_and_associative(curve):
    P = curve.base_multiply(curve.scalar(3))
    Q = curve.base_multiply(curve.scalar(5))
    R = curve.base_multiply(curve.scalar(7))
    assert curve.add(P, Q) == curve.add(Q, P)
    assert curve.add(curve.add(P, Q), R) == curve.add(P, curve.add(Q, R))


def test_scalar_multiplication_homomorphism(curve):
    for _ in range(3):
        a = curve.random_scalar()
        b = curve.random_scalar()
        lhs = curve.base_multiply(a + b)
        rhs = curve.add(curve.base_multiply(a), curve.base_multiply(b))
        assert curve.equals(lhs, rhs)


def test_small_multiples_match_repeated_addition(curve):
    G = curve.base()
    acc = curve.identity()
    for n in range(6):
        assert curve.base_multiply(curve.scalar(n)) == acc
        acc = curve.add(acc, G)


def test_negation_only_flips_x(curve):
    P = curve.base_multiply(curve.scalar(42))
    neg = curve.negate(P)
    assert neg.y == P.y
    assert neg.x == (-P.x) % curve.p
    assert curve.is_identity(curve.add(P, neg))
    assert curve.is_identity(curve.subtract(P, P))


def test_multiply_rejects_raw_integers(curve):
    with pytest.raises(TypeError):
        curve.multiply(curve.base(), 5)


def test_scalars_from_other_groups_are_rejected(curve):
    foreign = Scalar(5, 101)
    with pytest.raises(TypeError):
        curve.multiply(curve.base(), foreign)
    with pytest.raises(TypeError):
        curve.scalar(1) + foreign


def test_scalar_is_reduced_mod_subgroup_order(curve):
    s = curve.scalar(curve.order + 9)
    assert int(s) == 9
    assert int(curve.scalar(-1)) == curve.order - 1
    assert (curve.scalar(curve.order - 1) + curve.scalar(2)).value == 1


def test_scalar_repr_hides_value(curve):
    s = curve.scalar(1234567)
    assert "1234567" not in repr(s)


def test_scalar_constructor_rejects_non_integers(curve):
    with pytest.raises(TypeError):
        curve.scalar("12")
    with pytest.raises(TypeError):
        curve.scalar(True)


def test_point_constructor_validates(curve):
    G = curve.base()
    assert curve.point(str(G.x), str(G.y)) == G
    with pytest.raises(InvalidPointError):
        curve.point(G.x, G.y + 1)
    with pytest.raises(InvalidPointError):
        curve.point("abc", "1")
    with pytest.raises(InvalidPointError):
        curve.point(curve.p, 1)
    with pytest.raises(InvalidPointError):
        curve.point_from_dict({'x': str(G.x)})


def test_invalid_point_error_is_value_error():
    assert issubclass(InvalidPointError, ValueError)


def test_mod_inverse():
    assert (mod_inverse(3, 7) * 3) % 7 == 1
    with pytest.raises(CurveArithmeticError):
        mod_inverse(0, 7)
    with pytest.raises(ArithmeticError):
        mod_inverse(6, 9)


def test_int_to_bytes32_is_big_endian():
    encoded = int_to_bytes32(1)
    assert len(encoded) == 32
    assert encoded[-1] == 1 and encoded[0] == 0


def test_hash_to_scalar_is_deterministic(curve):
    a = curve.hash_to_scalar(b"abc", b"def")
    b = curve.hash_to_scalar(b"abc", b"def")
    c = curve.hash_to_scalar(b"abcd", b"ef")
    assert a == b
    # Concatenation, not framing
    assert a == c


def test_contexts_are_independent():
    first = CurveContext(BABYJUBJUB)
    second = CurveContext.babyjubjub()
    assert first.base() == second.base()
    assert first.order == second.order


def test_off_curve_base_point_is_rejected():
    from dataclasses import replace
    broken = replace(BABYJUBJUB, base_y=BABYJUBJUB.base_y + 1)
    with pytest.raises(InvalidPointError):
        CurveContext(broken)


def test_point_serialization(curve):
    P = curve.base_multiply(curve.scalar(99))
    assert P.to_dict() == {'x': str(P.x), 'y': str(P.y)}
    assert len(P.to_bytes()) == 64
    assert isinstance(P, Point)

from decimal import Decimal

import pytest

from rogue_crash.utils import (
    UINT256_MAX,
    ZERO_HASH,
    commit_server_seed,
    compute_winnings,
    derive_crash_point,
    format_multiplier,
    format_tokens,
    from_base_units,
    generate_server_seed,
    has_commitment,
    modulo_bias,
    multiplier_to_decimal,
    multiplier_to_int,
    normalize_hash,
    to_base_units,
    verify_commitment,
    verify_round,
)

from conftest import SEED_VECTORS, TOKEN


@pytest.mark.parametrize("client_seed,server_seed,expected", SEED_VECTORS)
def test_crash_point_vectors(client_seed, server_seed, expected):
    assert derive_crash_point(client_seed, server_seed) == expected


def test_crash_point_is_deterministic_and_in_range():
    for client_seed in range(0, 200, 7):
        for server_seed in (1, 2**64 + 3, UINT256_MAX):
            crash = derive_crash_point(client_seed, server_seed)
            assert 100 <= crash <= 999
            assert crash == derive_crash_point(client_seed, server_seed)


def test_crash_point_depends_on_both_seeds():
    assert derive_crash_point(12345, 67890) != derive_crash_point(1, 1)
    assert derive_crash_point(12345, 67890) != derive_crash_point(12346, 67890)


def test_unrevealed_server_seed_is_rejected():
    with pytest.raises(ValueError):
        derive_crash_point(12345, 0)


@pytest.mark.parametrize("bad", [-1, UINT256_MAX + 1])
def test_out_of_range_seed(bad):
    with pytest.raises(ValueError):
        derive_crash_point(bad, 1)


@pytest.mark.parametrize("bad", [True, 1.5, "12"])
def test_non_integer_seed(bad):
    with pytest.raises(TypeError):
        derive_crash_point(bad, 1)


def test_commitment_roundtrip():
    seed = generate_server_seed()
    seed_hash = commit_server_seed(seed)

    assert seed_hash.startswith("0x") and len(seed_hash) == 66
    assert verify_commitment(seed, seed_hash)
    assert verify_commitment(seed, seed_hash.upper().replace("0X", "0x"))
    assert not verify_commitment(seed + 1, seed_hash)


def test_normalize_hash():
    assert normalize_hash(None) == ZERO_HASH
    assert normalize_hash("") == ZERO_HASH
    assert normalize_hash(b"\x01" * 32) == "0x" + "01" * 32
    assert not has_commitment(ZERO_HASH)
    with pytest.raises(ValueError):
        normalize_hash("0x1234")


def test_verify_round():
    seed_hash = commit_server_seed(67890)

    assert verify_round(12345, 67890, 218)
    assert verify_round(12345, 67890, 218, seed_hash)
    assert not verify_round(12345, 67890, 219)
    assert not verify_round(12345, 67890, 218, commit_server_seed(1))
    assert not verify_round(12345, 0, 218)


def test_modulo_bias():
    favoured, bias = modulo_bias()
    assert favoured == 2**32 % 900 == 796
    assert bias == pytest.approx(1 / 4772185)


def test_generated_server_seeds():
    seeds = {generate_server_seed() for _ in range(20)}
    assert len(seeds) == 20
    assert all(0 < s <= UINT256_MAX for s in seeds)


def test_winnings_formula():
    assert compute_winnings(100 * TOKEN, 250, 200) == 245 * TOKEN
    assert compute_winnings(TOKEN, 100, 200) == 98 * 10**16
    assert compute_winnings(TOKEN, 150, 0) == 15 * 10**17
    # floor division in base units
    assert compute_winnings(1, 101, 200) == 0


def test_base_unit_conversion():
    assert to_base_units("0.1") == 10**17
    assert to_base_units(0.1) == 10**17
    assert to_base_units(Decimal("1.5")) == 15 * 10**17
    assert from_base_units(15 * 10**17) == Decimal("1.5")
    with pytest.raises(ValueError):
        to_base_units("abc")
    with pytest.raises(ValueError):
        to_base_units(float("inf"))


def test_multiplier_conversion_truncates():
    assert multiplier_to_int("1.2399") == 123
    assert multiplier_to_int(Decimal("2.5")) == 250
    assert multiplier_to_int(1.0) == 100
    assert multiplier_to_decimal(218) == Decimal("2.18")


def test_formatting():
    assert format_multiplier(150) == "x1.50"
    assert format_multiplier(999) == "x9.99"
    assert format_tokens(125 * 10**17) == "12.5 RGC"
    assert format_tokens(0) == "0 RGC"

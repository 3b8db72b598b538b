import itertools
import random

import pytest

from ggza.errors import DataIntegrityError
from ggza.shuffle import (
    apply_permutation,
    displayed_index_of,
    generate_permutation,
    resolve_selection,
    validate_permutation,
)

ALL_PERMUTATIONS = [list(p) for p in itertools.permutations(range(4))]


def test_generate_permutation_is_a_bijection():
    for _ in range(200):
        permutation = generate_permutation()
        assert sorted(permutation) == [0, 1, 2, 3]


def test_generate_permutation_reaches_every_ordering():
    rng = random.Random(7)
    seen = {tuple(generate_permutation(rng=rng)) for _ in range(2400)}
    assert len(seen) == 24


def test_generate_permutation_is_reproducible_with_seeded_rng():
    assert generate_permutation(rng=random.Random(3)) == generate_permutation(rng=random.Random(3))


def test_resolve_selection_matches_permutation_lookup():
    for permutation in ALL_PERMUTATIONS:
        for canonical in range(4):
            for displayed in range(4):
                expected = permutation[displayed] == canonical
                assert resolve_selection(displayed, permutation, canonical) is expected


def test_timeout_is_never_correct():
    for permutation in ALL_PERMUTATIONS:
        for canonical in range(4):
            assert resolve_selection(None, permutation, canonical) is False


def test_out_of_range_selection_is_wrong():
    assert resolve_selection(4, [0, 1, 2, 3], 0) is False
    assert resolve_selection(-1, [0, 1, 2, 3], 3) is False


def test_apply_permutation_and_displayed_index_agree():
    options = ["Jett", "Sage", "Phoenix", "Omen"]
    permutation = [2, 0, 3, 1]

    displayed = apply_permutation(options, permutation)

    assert displayed == ["Phoenix", "Jett", "Omen", "Sage"]
    correct_canonical = 1
    shown_at = displayed_index_of(correct_canonical, permutation)
    assert displayed[shown_at] == "Sage"
    assert resolve_selection(shown_at, permutation, correct_canonical) is True


@pytest.mark.parametrize(
    "permutation",
    [None, [], [0, 1, 2], [0, 1, 2, 3, 4], [0, 0, 1, 2], [0, 1, 2, "3"], [True, 0, 2, 3], "0123"],
)
def test_corrupt_permutation_fails_closed(permutation):
    with pytest.raises(DataIntegrityError):
        validate_permutation(permutation)
    with pytest.raises(DataIntegrityError):
        resolve_selection(0, permutation, 0)
    with pytest.raises(DataIntegrityError):
        resolve_selection(None, permutation, 0)

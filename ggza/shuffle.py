"""Answer-order shuffling for question assignments.

Each assignment stores a permutation ``p`` of ``range(4)`` where
``p[displayed] == canonical``: the option shown at position ``displayed``
is the authored option ``canonical``. The permutation never leaves the
server, so the client cannot recover the correct canonical index.
"""
import random
from typing import Optional, Sequence

from ggza.errors import DataIntegrityError

OPTION_COUNT = 4

_system_random = random.SystemRandom()


def generate_permutation(n: int = OPTION_COUNT, rng: random.Random | None = None) -> list[int]:
    """Fisher-Yates shuffle of ``range(n)``; OS entropy unless ``rng`` is given."""
    rng = rng or _system_random
    permutation = list(range(n))
    for i in range(n - 1, 0, -1):
        j = rng.randint(0, i)
        permutation[i], permutation[j] = permutation[j], permutation[i]
    return permutation


def validate_permutation(permutation, n: int = OPTION_COUNT) -> list[int]:
    if not isinstance(permutation, (list, tuple)) or len(permutation) != n:
        raise DataIntegrityError(f"Answer permutation must list {n} positions, got {permutation!r}")
    if any(isinstance(p, bool) or not isinstance(p, int) for p in permutation):
        raise DataIntegrityError(f"Answer permutation has non-integer entries: {permutation!r}")
    if sorted(permutation) != list(range(n)):
        raise DataIntegrityError(f"Answer permutation is not a bijection on 0..{n - 1}: {permutation!r}")
    return list(permutation)


def apply_permutation(canonical_options: Sequence[str], permutation) -> list[str]:
    permutation = validate_permutation(permutation, len(canonical_options))
    return [canonical_options[p] for p in permutation]


def displayed_index_of(canonical_index: int, permutation) -> int:
    permutation = validate_permutation(permutation)
    return permutation.index(canonical_index)


def resolve_selection(displayed_index: Optional[int], permutation, canonical_correct_index: int) -> bool:
    """Grade a displayed selection against the canonical answer.

    A missing selection (timeout) is always wrong. A corrupt permutation
    raises ``DataIntegrityError`` instead of guessing.
    """
    permutation = validate_permutation(permutation)
    if displayed_index is None:
        return False
    if not 0 <= displayed_index < len(permutation):
        return False
    return permutation[displayed_index] == canonical_correct_index

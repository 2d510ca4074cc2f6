"""
Row/column number assignment for a board.

Each axis gets an independent Fisher-Yates shuffle of ``0..n-1`` (``n`` is 10
or 5). Randomness is injected: the default source is the system RNG, and the
seeded path plugs a small linear congruential generator into the same
shuffle so an assignment can be reproduced from its seed for audits.
"""
import random
import secrets
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from gridplay.core.exceptions import NumberAssignmentError
from gridplay.domain import AssignedNumbers, BoardSize, Square

# Approximate share of NFL final scores ending in each digit.
_NFL_LAST_DIGIT_PROBABILITY: Dict[int, float] = {
    0: 0.17,
    1: 0.08,
    2: 0.06,
    3: 0.12,
    4: 0.12,
    5: 0.05,
    6: 0.10,
    7: 0.18,
    8: 0.06,
    9: 0.06,
}


class RandomSource(Protocol):
    """Uniform floats in ``[0, 1)``. ``random.Random`` satisfies this."""

    def random(self) -> float:
        ...


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


class LcgRandom:
    """
    Deterministic generator seeded from a string.

    The seed's character codes are folded into a 32-bit state
    (``h = h * 31 + code``); each draw advances the state with the classic
    ``1103515245 * x + 12345`` step and returns the upper 16 bits scaled to
    ``[0, 1)``.
    """

    MULTIPLIER = 1103515245
    INCREMENT = 12345

    def __init__(self, seed: str):
        state = 0
        for char in seed:
            state = _to_int32(state * 31 + ord(char))
        self._state = state

    def random(self) -> float:
        self._state = _to_int32(self._state * self.MULTIPLIER + self.INCREMENT)
        return ((self._state & 0xFFFFFFFF) >> 16) / 65536


def shuffle(values: Iterable[int], rng: RandomSource) -> List[int]:
    """Fisher-Yates shuffle returning a new list."""
    shuffled = list(values)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng.random() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def validate_numbers(numbers: Sequence[int], size: BoardSize) -> None:
    """
    Check that ``numbers`` is a permutation of the axis digits.

    Correct shuffling never trips this; a failure means the assignment code
    itself is broken.

    Raises:
        NumberAssignmentError: If the length or the set of values is wrong
    """
    axis = size.dimension
    if len(numbers) != axis:
        raise NumberAssignmentError(
            f"Expected {axis} numbers, got {len(numbers)}", board_size=size.value
        )
    if sorted(numbers) != list(range(axis)):
        raise NumberAssignmentError(
            f"Numbers {list(numbers)} are not a permutation of 0-{axis - 1}",
            board_size=size.value,
        )


def assign(size: BoardSize, rng: Optional[RandomSource] = None) -> AssignedNumbers:
    """
    Assign row and column numbers for a board.

    Args:
        size: Board size
        rng: Random source (system RNG if not provided)

    Returns:
        AssignedNumbers: Independent permutations for rows and columns
    """
    source = rng if rng is not None else random.SystemRandom()
    axis = range(size.dimension)
    row_numbers = shuffle(axis, source)
    col_numbers = shuffle(axis, source)

    validate_numbers(row_numbers, size)
    validate_numbers(col_numbers, size)

    return AssignedNumbers(row_numbers=tuple(row_numbers), col_numbers=tuple(col_numbers))


def assign_seeded(size: BoardSize, seed: str) -> AssignedNumbers:
    """Reproducible assignment: identical seeds give identical numbers."""
    numbers = assign(size, LcgRandom(seed))
    return numbers.model_copy(update={"seed": seed})


def generate_seed() -> str:
    """Seed string of the form ``<epoch millis>-<random suffix>``."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def assign_numbers_to_squares(
    squares: Iterable[Square],
    row_numbers: Sequence[int],
    col_numbers: Sequence[int],
) -> Dict[str, Tuple[int, int]]:
    """Map each square id to the (row digit, column digit) it carries."""
    return {
        square.id: (row_numbers[square.row], col_numbers[square.col]) for square in squares
    }


def number_frequency(numbers: Iterable[int]) -> Dict[int, int]:
    return dict(Counter(numbers))


def winning_probability(size: BoardSize) -> Dict[int, float]:
    """
    Historical chance of each assigned digit winning a quarter.

    On a 5x5 board digits ``d`` and ``d + 5`` share a row, so their
    probabilities are added together.
    """
    if size is BoardSize.TEN:
        return dict(_NFL_LAST_DIGIT_PROBABILITY)

    folded: Dict[int, float] = {}
    for digit, probability in _NFL_LAST_DIGIT_PROBABILITY.items():
        folded[digit % 5] = round(folded.get(digit % 5, 0.0) + probability, 2)
    return folded

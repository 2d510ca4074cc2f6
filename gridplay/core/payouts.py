"""
Winner and payout computation.

Everything here is a pure function of its inputs: no store access, no clock,
no metrics. The same squares, numbers and scores always produce the same
``PayoutResult``, so callers can recompute after every quarter.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from gridplay.core.exceptions import ConfigInvalid
from gridplay.domain import (
    BoardSize,
    OwnerWinnings,
    PayoutConfig,
    PayoutResult,
    Quarter,
    QuarterScore,
    Square,
    SquareStatus,
    UnclaimedQuarter,
    Winner,
)

CENT = Decimal("0.01")

DEFAULT_DISTRIBUTION: Dict[str, int] = {"q1": 20, "q2": 20, "q3": 20, "final": 40}

# Payout buckets in award order. Overtime is paid from the final bucket.
_BUCKETS: Tuple[Quarter, ...] = (Quarter.Q1, Quarter.Q2, Quarter.Q3, Quarter.FINAL)

_BREAKDOWN_LABELS = (
    ("1st Quarter", "first_quarter"),
    ("2nd Quarter", "second_quarter"),
    ("3rd Quarter", "third_quarter"),
    ("Final Score", "final"),
)


def _bucket(quarter: Quarter) -> Quarter:
    return Quarter.FINAL if quarter is Quarter.OT else quarter


def score_digit(score: int, size: BoardSize) -> int:
    """Last digit of a score, folded onto 0-4 for 5x5 boards."""
    return abs(score) % size.dimension


def find_winning_square(
    squares: Sequence[Square],
    row_numbers: Sequence[int],
    col_numbers: Sequence[int],
    home_digit: int,
    away_digit: int,
) -> Optional[Square]:
    """Square at the row carrying ``home_digit`` and the column carrying ``away_digit``."""
    try:
        row = list(row_numbers).index(home_digit)
        col = list(col_numbers).index(away_digit)
    except ValueError:
        return None
    for square in squares:
        if square.row == row and square.col == col:
            return square
    return None


def compute_winners(
    squares: Sequence[Square],
    row_numbers: Sequence[int],
    col_numbers: Sequence[int],
    scores: Sequence[QuarterScore],
    payout_config: PayoutConfig,
    board_size: BoardSize,
) -> PayoutResult:
    """
    Determine the winning square and payout for each scored quarter.

    Each payout bucket (Q1, Q2, Q3, Final) is awarded at most once. When the
    sequence carries several scores for one bucket (a corrected score, or a
    Final followed by OT) the last one decides it. A bucket whose winning
    square has no owner is reported in ``unclaimed`` and its share stays in
    ``remaining_pot``.

    Args:
        squares: Every square of the board
        row_numbers: Digit assigned to each row (home team)
        col_numbers: Digit assigned to each column (away team)
        scores: Quarter scores in the order they were reported
        payout_config: Share per bucket and the total pot
        board_size: Grid size, selecting mod 10 or mod 5 digits

    Returns:
        PayoutResult: Winners, amount awarded and what is left in the pot
    """
    deciding: Dict[Quarter, QuarterScore] = {}
    for score in scores:
        deciding[_bucket(score.quarter)] = score

    winners: List[Winner] = []
    unclaimed: List[UnclaimedQuarter] = []
    for bucket in _BUCKETS:
        score = deciding.get(bucket)
        if score is None:
            continue
        share = payout_config.share_for(bucket)
        if share <= 0:
            continue

        home_digit = score_digit(score.home_score, board_size)
        away_digit = score_digit(score.away_score, board_size)
        square = find_winning_square(squares, row_numbers, col_numbers, home_digit, away_digit)

        if square is None or square.status is not SquareStatus.PURCHASED:
            unclaimed.append(
                UnclaimedQuarter(
                    quarter=score.quarter,
                    share=share,
                    home_digit=home_digit,
                    away_digit=away_digit,
                    square_id=square.id if square else None,
                    reason="no_square" if square is None else "unowned",
                )
            )
            continue

        winners.append(
            Winner(
                square=square,
                quarter=score.quarter,
                payout=share,
                home_digit=home_digit,
                away_digit=away_digit,
                score=score,
            )
        )

    total_payout = sum((winner.payout for winner in winners), Decimal("0"))
    return PayoutResult(
        winners=tuple(winners),
        total_payout=total_payout,
        remaining_pot=payout_config.total - total_payout,
        unclaimed=tuple(unclaimed),
    )


def summarize_winners(winners: Sequence[Winner]) -> List[OwnerWinnings]:
    """Aggregate winners per owner, in order of first win."""
    totals: Dict[str, Decimal] = {}
    quarters: Dict[str, List[Quarter]] = {}
    for winner in winners:
        owner = winner.owner_id
        totals[owner] = totals.get(owner, Decimal("0")) + winner.payout
        quarters.setdefault(owner, []).append(winner.quarter)

    return [
        OwnerWinnings(
            owner_id=owner,
            total_payout=total,
            wins=len(quarters[owner]),
            quarters=tuple(quarters[owner]),
        )
        for owner, total in totals.items()
    ]


def validate_payout_config(config: PayoutConfig, expected_total: Optional[Decimal] = None) -> None:
    """
    Check a payout configuration, collecting every problem.

    Raises:
        ConfigInvalid: If a share is negative, the shares do not sum to the
            total, or the total differs from ``expected_total``
    """
    errors = []
    for label, field in (
        ("First quarter", "first_quarter"),
        ("Second quarter", "second_quarter"),
        ("Third quarter", "third_quarter"),
        ("Final", "final"),
    ):
        if getattr(config, field) < 0:
            errors.append(f"{label} payout cannot be negative")

    shares = config.first_quarter + config.second_quarter + config.third_quarter + config.final
    if shares != config.total:
        errors.append(f"Payout sum ({shares}) does not match total pot ({config.total})")
    if expected_total is not None and config.total != expected_total:
        errors.append(f"Total pot ({config.total}) does not match board pot ({expected_total})")

    if errors:
        raise ConfigInvalid(errors)


def _percent_of(total: Decimal, percent: int | Decimal) -> Decimal:
    return (total * Decimal(percent) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def default_payouts(total: Decimal) -> PayoutConfig:
    """20/20/20/40 split; the rounding remainder goes to the final share."""
    quarter = _percent_of(total, DEFAULT_DISTRIBUTION["q1"])
    return PayoutConfig(
        first_quarter=quarter,
        second_quarter=quarter,
        third_quarter=quarter,
        final=total - 3 * quarter,
        total=total,
    )


def custom_payouts(total: Decimal, distribution: Mapping[str, int | Decimal]) -> PayoutConfig:
    """
    Split ``total`` by percentages keyed ``q1``, ``q2``, ``q3`` and ``final``.

    Each share is rounded to the cent independently; pass the result through
    ``validate_payout_config`` to catch distributions that do not add up.
    """
    return PayoutConfig(
        first_quarter=_percent_of(total, distribution["q1"]),
        second_quarter=_percent_of(total, distribution["q2"]),
        third_quarter=_percent_of(total, distribution["q3"]),
        final=_percent_of(total, distribution["final"]),
        total=total,
    )


def payout_breakdown(config: PayoutConfig) -> List[Dict[str, object]]:
    breakdown = []
    for label, field in _BREAKDOWN_LABELS:
        amount: Decimal = getattr(config, field)
        percentage = (
            int((amount * 100 / config.total).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            if config.total
            else 0
        )
        breakdown.append({"quarter": label, "amount": amount, "percentage": percentage})
    return breakdown


def quarter_scores_from_linescore(
    home_periods: Sequence[int], away_periods: Sequence[int]
) -> List[QuarterScore]:
    """
    Convert per-period points into cumulative checkpoint scores.

    Periods one to three become Q1-Q3, the fourth becomes Final and every
    later period is reported as OT with the running total.
    """
    scores = []
    home_total = away_total = 0
    for index in range(max(len(home_periods), len(away_periods))):
        home_total += home_periods[index] if index < len(home_periods) else 0
        away_total += away_periods[index] if index < len(away_periods) else 0
        if index < 3:
            quarter = _BUCKETS[index]
        elif index == 3:
            quarter = Quarter.FINAL
        else:
            quarter = Quarter.OT
        scores.append(QuarterScore(quarter=quarter, home_score=home_total, away_score=away_total))
    return scores

"""Domain types shared by the ledger, settlement and payout components."""
from .events import SettlementEvent, SettlementEventType, SettlementOutcome
from .models import (
    AssignedNumbers,
    Available,
    Board,
    BoardProgress,
    BoardSize,
    BoardStatus,
    OwnerWinnings,
    PaymentProvider,
    PaymentTransaction,
    PayoutConfig,
    PayoutResult,
    Purchased,
    Quarter,
    QuarterScore,
    Reserved,
    Square,
    SquareState,
    SquareStatus,
    TransactionEvent,
    TransactionStatus,
    UnclaimedQuarter,
    Winner,
    new_id,
)

__all__ = [
    "AssignedNumbers",
    "Available",
    "Board",
    "BoardProgress",
    "BoardSize",
    "BoardStatus",
    "OwnerWinnings",
    "PaymentProvider",
    "PaymentTransaction",
    "PayoutConfig",
    "PayoutResult",
    "Purchased",
    "Quarter",
    "QuarterScore",
    "Reserved",
    "SettlementEvent",
    "SettlementEventType",
    "SettlementOutcome",
    "Square",
    "SquareState",
    "SquareStatus",
    "TransactionEvent",
    "TransactionStatus",
    "UnclaimedQuarter",
    "Winner",
    "new_id",
]

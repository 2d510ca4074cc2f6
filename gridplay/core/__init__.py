"""Core reservation, settlement and payout logic."""
from .boards import BoardService
from .clock import Clock, ManualClock, SystemClock
from .ledger import SquareLedger
from .settlement import SettlementProcessor, SettlementResult

__all__ = [
    "BoardService",
    "Clock",
    "ManualClock",
    "SettlementProcessor",
    "SettlementResult",
    "SquareLedger",
    "SystemClock",
]

"""
Prometheus metrics for the reservation and settlement engine.

Tracks:
- Square reservations and conflicts
- Ledger transitions by kind
- Settlement events by provider, type and outcome
- Settlement anomalies (ledger desync, void after sale)
- Number assignments
- Payout computations
"""
from prometheus_client import Counter, Histogram

# Square ledger metrics
square_reservations_total = Counter(
    "gridplay_square_reservations_total",
    "Total squares reserved",
)

square_reservation_conflicts_total = Counter(
    "gridplay_square_reservation_conflicts_total",
    "Total reservation attempts rejected because a square was already claimed",
)

ledger_transitions_total = Counter(
    "gridplay_ledger_transitions_total",
    "Total square state transitions applied",
    ["transition"],  # reserve, confirm, release, expire
)

ledger_batch_size = Histogram(
    "gridplay_ledger_batch_size",
    "Number of squares per ledger batch operation",
    ["operation"],
    buckets=(1, 2, 3, 5, 10, 25, 50, 100),
)

# Settlement metrics
settlement_events_total = Counter(
    "gridplay_settlement_events_total",
    "Total payment settlement events processed",
    ["provider", "event_type", "outcome"],  # applied, duplicate, anomaly, ignored
)

settlement_anomalies_total = Counter(
    "gridplay_settlement_anomalies_total",
    "Settlement events that disagree with the square ledger",
    ["provider", "reason"],
)

settlement_processing_duration_seconds = Histogram(
    "gridplay_settlement_processing_duration_seconds",
    "Settlement event processing duration in seconds",
    ["provider"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Board metrics
number_assignments_total = Counter(
    "gridplay_number_assignments_total",
    "Row/column number assignment attempts",
    ["outcome"],  # assigned, already_assigned, not_full
)

# Payout metrics
payout_computations_total = Counter(
    "gridplay_payout_computations_total",
    "Total winner computations",
    ["board_size"],
)

unclaimed_quarters_total = Counter(
    "gridplay_unclaimed_quarters_total",
    "Quarters whose winning square had no owner",
    ["quarter"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reservation(count: int) -> None:
        """Record reserved squares."""
        square_reservations_total.inc(count)
        ledger_transitions_total.labels(transition="reserve").inc(count)
        ledger_batch_size.labels(operation="reserve").observe(count)

    @staticmethod
    def record_reservation_conflict() -> None:
        """Record a rejected reservation."""
        square_reservation_conflicts_total.inc()

    @staticmethod
    def record_transition(transition: str, count: int = 1) -> None:
        """Record applied ledger transitions."""
        if count > 0:
            ledger_transitions_total.labels(transition=transition).inc(count)
            ledger_batch_size.labels(operation=transition).observe(count)

    @staticmethod
    def record_settlement_event(
        provider: str, event_type: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record a processed settlement event."""
        settlement_events_total.labels(
            provider=provider, event_type=event_type, outcome=outcome
        ).inc()
        settlement_processing_duration_seconds.labels(provider=provider).observe(
            duration_seconds
        )

    @staticmethod
    def record_settlement_anomaly(provider: str, reason: str) -> None:
        """Record a settlement anomaly for operator review."""
        settlement_anomalies_total.labels(provider=provider, reason=reason).inc()

    @staticmethod
    def record_number_assignment(outcome: str) -> None:
        """Record a number assignment attempt."""
        number_assignments_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payout_computation(board_size: str, unclaimed_quarters: list[str]) -> None:
        """Record a winner computation and its unclaimed quarters."""
        payout_computations_total.labels(board_size=board_size).inc()
        for quarter in unclaimed_quarters:
            unclaimed_quarters_total.labels(quarter=quarter).inc()


# Export singleton instance
metrics = MetricsCollector()

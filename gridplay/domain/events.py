"""
Provider-neutral settlement events.

Stripe and PayPal webhooks are normalized into ``SettlementEvent`` at the
integration boundary, so the settlement state machine never sees a
provider-specific payload.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from gridplay.domain.models import PaymentProvider


class SettlementEventType(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"
    DENIED = "denied"
    REFUNDED = "refunded"
    VOIDED = "voided"


class SettlementOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"
    IGNORED = "ignored"


class SettlementEvent(BaseModel):
    """A payment notification, stripped of its provider's shape."""

    type: SettlementEventType
    provider: PaymentProvider
    external_id: str = Field(..., min_length=1)
    provider_ref: Optional[str] = Field(
        default=None, description="Provider payment id later events may be keyed by"
    )
    board_id: Optional[str] = None
    square_ids: Tuple[str, ...] = ()
    user_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_type: Optional[str] = Field(default=None, description="Provider event type")
    provider_event_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("square_ids", mode="before")
    @classmethod
    def split_square_ids(cls, v: Any) -> Any:
        """Accept the comma-separated form the providers carry in metadata."""
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(part.strip() for part in v.split(",") if part.strip())
        return v

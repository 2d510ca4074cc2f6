"""Monitoring and observability package."""
from .logging import settlement_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "settlement_context", "setup_logging"]

"""Metering audit trail for upstream LLM usage.

Captures one usage event per metered call attempt.  Separate from the
Prometheus metrics (which cover aggregate observability).
"""

from meter_core.metering.events import OperationKind, UsageEvent, UsageStatus

__all__ = ["OperationKind", "UsageEvent", "UsageStatus"]

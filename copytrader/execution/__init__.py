"""
Execution module.

Contains sizing, pacing, order execution and the mirror lifecycle.

ARCHITECTURE:
    CopyTradingService (one task per follower)
        │
        ├── InstrumentMetaCache ──► position_sizing.size_position
        │
        ├── MirrorStateMachine (pre-flight guards, single writer of outcome)
        │
        └── OrderExecutor (chosen once at startup)
                ├── LiveOrderExecutor       CallIntervalGate + call_with_retry
                └── SimulatedOrderExecutor  CallIntervalGate + weighted outcome
"""

from copytrader.execution.error_classification import ErrorClassification, classify_error
from copytrader.execution.executor import (
    LiveOrderExecutor,
    OrderExecutor,
    SimulatedOrderExecutor,
    build_order_executor,
)
from copytrader.execution.instrument_meta import InstrumentMetaCache, is_fallback_metadata
from copytrader.execution.position_sizing import (
    apply_quantity_override,
    ceil_to_step,
    floor_to_step,
    size_position,
)
from copytrader.execution.rate_limiter import CallIntervalGate
from copytrader.execution.state_machine import MirrorStateMachine, check_invariant

__all__ = [
    # Sizing
    "InstrumentMetaCache",
    "is_fallback_metadata",
    "size_position",
    "apply_quantity_override",
    "floor_to_step",
    "ceil_to_step",

    # Pacing / execution
    "CallIntervalGate",
    "ErrorClassification",
    "classify_error",
    "OrderExecutor",
    "LiveOrderExecutor",
    "SimulatedOrderExecutor",
    "build_order_executor",

    # Lifecycle
    "MirrorStateMachine",
    "check_invariant",
]

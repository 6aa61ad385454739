"""
Controller layer for foilview.

Controllers own a lifecycle state machine.  They subscribe to command events and publish
state events.
"""

from foilview.backend.controllers.connection_controller import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)
from foilview.backend.controllers.auto_step_controller import (
    AutoStepParameters,
    AutoStepSequencer,
    AutoStepSession,
    AutoStepState,
    AutoStepSummary,
    ExecutionPlan,
    StartResult,
    create_execution_plan,
    parse_direction,
    summarize_session,
    validate_auto_step_parameters,
)

__all__ = [
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    # Auto-step
    "AutoStepParameters",
    "AutoStepSequencer",
    "AutoStepSession",
    "AutoStepState",
    "AutoStepSummary",
    "ExecutionPlan",
    "StartResult",
    "create_execution_plan",
    "parse_direction",
    "summarize_session",
    "validate_auto_step_parameters",
]

"""
Exchange workflow services.
"""

from .errors import (
    ServiceError, NotFoundError, InvalidTransitionError, GuardsNotMetError,
    VersionConflictError, ActionPartialFailure
)
from .workflow_engine import (
    WorkflowEngine, AvailableTransition, ValidationResult, TransitionResult,
    replay_stage
)
from .deadline_scheduler import DeadlineScheduler

__all__ = [
    'ServiceError',
    'NotFoundError',
    'InvalidTransitionError',
    'GuardsNotMetError',
    'VersionConflictError',
    'ActionPartialFailure',
    'WorkflowEngine',
    'AvailableTransition',
    'ValidationResult',
    'TransitionResult',
    'replay_stage',
    'DeadlineScheduler',
]
